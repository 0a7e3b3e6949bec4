"""Configuration loading for flake-info (.flake-info.yml and environment)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .errors import ConfigError

CONFIG_FILENAME = ".flake-info.yml"

ENV_BACKEND_URL = "FLAKE_INFO_BACKEND_URL"
ENV_BACKEND_TOKEN = "FLAKE_INFO_BACKEND_TOKEN"

DEFAULT_PLATFORMS = (
    "x86_64-linux",
    "aarch64-linux",
    "x86_64-darwin",
    "aarch64-darwin",
)

LIGHTWEIGHT_POLICIES = ("confirmed", "existence")


@dataclass
class EvaluationConfig:
    """How the evaluation engine is invoked."""

    executable: str = "nix"
    primary_platform: str = "x86_64-linux"
    platforms: List[str] = field(default_factory=lambda: list(DEFAULT_PLATFORMS))
    timeout: float = 900.0
    platform_workers: int = 2
    lightweight_policy: str = "confirmed"
    extra_args: List[str] = field(default_factory=list)

    def target_platforms(self) -> List[str]:
        """Primary platform first, then the remaining platforms without duplicates."""
        ordered = [self.primary_platform]
        ordered.extend(platform for platform in self.platforms if platform)
        return list(dict.fromkeys(ordered))


@dataclass
class RunConfig:
    """Flake-level scheduling."""

    flake_workers: int = 2
    metadata_timeout: float = 120.0


@dataclass
class PublishConfig:
    """Index naming and bulk-write behaviour."""

    index_prefix: str = "flake-info"
    schema_version: int = 1
    batch_size: int = 500
    max_retries: int = 3
    backoff: float = 1.0
    request_timeout: float = 60.0


@dataclass
class FlakeInfoConfig:
    """Represents the settings defined in .flake-info.yml."""

    root: Path
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    runs: RunConfig = field(default_factory=RunConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)


@dataclass(frozen=True)
class BackendSettings:
    """Search backend endpoint and credentials taken from the environment."""

    url: str
    token: str


def load_config(config_path: Path) -> FlakeInfoConfig:
    """Load configuration from disk, falling back to defaults when absent."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    if not config_file.exists():
        return FlakeInfoConfig(root=root)

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    evaluation = EvaluationConfig()
    eval_data = _as_dict(data.get("evaluation"))
    if eval_data:
        evaluation.executable = _as_str(eval_data.get("executable")) or evaluation.executable
        evaluation.primary_platform = (
            _as_str(eval_data.get("primary_platform")) or evaluation.primary_platform
        )
        platforms = _as_str_list(eval_data.get("platforms"))
        if platforms:
            evaluation.platforms = platforms
        evaluation.timeout = _positive_float(eval_data.get("timeout"), evaluation.timeout)
        evaluation.platform_workers = _positive_int(
            eval_data.get("platform_workers"), evaluation.platform_workers
        )
        policy = _as_str(eval_data.get("lightweight_policy"))
        if policy is not None:
            if policy not in LIGHTWEIGHT_POLICIES:
                raise ConfigError(
                    f"evaluation.lightweight_policy must be one of {', '.join(LIGHTWEIGHT_POLICIES)}"
                )
            evaluation.lightweight_policy = policy
        evaluation.extra_args = _as_str_list(eval_data.get("extra_args"))

    runs = RunConfig()
    runs_data = _as_dict(data.get("runs"))
    if runs_data:
        runs.flake_workers = _positive_int(runs_data.get("flake_workers"), runs.flake_workers)
        runs.metadata_timeout = _positive_float(
            runs_data.get("metadata_timeout"), runs.metadata_timeout
        )

    publish = PublishConfig()
    publish_data = _as_dict(data.get("publish"))
    if publish_data:
        publish.index_prefix = _as_str(publish_data.get("index_prefix")) or publish.index_prefix
        publish.schema_version = _positive_int(
            publish_data.get("schema_version"), publish.schema_version
        )
        publish.batch_size = _positive_int(publish_data.get("batch_size"), publish.batch_size)
        publish.max_retries = _positive_int(publish_data.get("max_retries"), publish.max_retries)
        publish.backoff = _non_negative_float(publish_data.get("backoff"), publish.backoff)
        publish.request_timeout = _positive_float(
            publish_data.get("request_timeout"), publish.request_timeout
        )

    return FlakeInfoConfig(root=root, evaluation=evaluation, runs=runs, publish=publish)


def load_backend_settings(environ: Mapping[str, str] | None = None) -> BackendSettings:
    """Read backend credentials; missing values are a startup error."""
    env = os.environ if environ is None else environ
    url = (env.get(ENV_BACKEND_URL) or "").strip()
    token = (env.get(ENV_BACKEND_TOKEN) or "").strip()
    missing = [
        name for name, value in ((ENV_BACKEND_URL, url), (ENV_BACKEND_TOKEN, token)) if not value
    ]
    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")
    return BackendSettings(url=url.rstrip("/"), token=token)


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _positive_float(value: Any, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected a number, got {value!r}")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Expected a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"Expected a positive number, got {value!r}")
    return number


def _non_negative_float(value: Any, default: float) -> float:
    if value in (0, 0.0, "0"):
        return 0.0
    return _positive_float(value, default)


def _positive_int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Expected an integer, got {value!r}")
    try:
        number = int(value)
    except ValueError as exc:
        raise ConfigError(f"Expected an integer, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"Expected a positive integer, got {value!r}")
    return number


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


__all__ = [
    "BackendSettings",
    "CONFIG_FILENAME",
    "DEFAULT_PLATFORMS",
    "ENV_BACKEND_TOKEN",
    "ENV_BACKEND_URL",
    "EvaluationConfig",
    "FlakeInfoConfig",
    "LIGHTWEIGHT_POLICIES",
    "PublishConfig",
    "RunConfig",
    "load_backend_settings",
    "load_config",
]

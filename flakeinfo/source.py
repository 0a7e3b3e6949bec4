"""Flake sources: definitions, sources files and nixpkgs channel resolution."""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import ConfigError, TransportError
from .models import FlakeReference
from .retry import RetryPolicy, call_with_retry

GITHUB_BRANCH_URL = "https://api.github.com/repos/nixos/nixpkgs/branches/nixos-{channel}"
NIXPKGS_TARBALL_URL = "https://api.github.com/repos/NixOS/nixpkgs/tarball/{commit}"

# Order matters: the query string is rendered in this order.
_ATTR_KEYS = (
    ("ref", ("ref", "git_ref")),
    ("rev", ("rev", "hash")),
    ("dir", ("dir",)),
    ("narHash", ("narHash",)),
    ("revCount", ("revCount",)),
    ("lastModified", ("lastModified",)),
)


@dataclass(frozen=True)
class FlakeRefAttrs:
    """Optional pinning attributes appended to a flake reference."""

    values: tuple = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FlakeRefAttrs":
        collected = []
        for name, aliases in _ATTR_KEYS:
            for alias in aliases:
                value = data.get(alias)
                if value is not None and value != "":
                    collected.append((name, str(value)))
                    break
        return cls(values=tuple(collected))

    def get(self, name: str) -> Optional[str]:
        for key, value in self.values:
            if key == name:
                return value
        return None

    def query_string(self) -> str:
        if not self.values:
            return ""
        return "?" + "&".join(f"{key}={value}" for key, value in self.values)

    def append_to(self, base: str) -> str:
        query = self.query_string()
        if not query:
            return base
        if "?" in base:
            return f"{base}&{query[1:]}"
        return f"{base}{query}"


@dataclass(frozen=True)
class Source:
    """A flake origin: a forge repository, a plain git url or a nixpkgs channel."""

    type: str
    owner: Optional[str] = None
    repo: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None
    channel: Optional[str] = None
    git_ref: Optional[str] = None
    attrs: FlakeRefAttrs = field(default_factory=FlakeRefAttrs)

    def to_flake_ref(self) -> str:
        if self.type in {"github", "gitlab", "sourcehut"}:
            return self.attrs.append_to(f"{self.type}:{self.owner}/{self.repo}")
        if self.type == "git":
            return self.attrs.append_to(self.url or "")
        if self.type == "nixpkgs":
            if not self.git_ref:
                raise ConfigError(f"nixpkgs channel {self.channel} has not been resolved to a commit")
            return NIXPKGS_TARBALL_URL.format(commit=self.git_ref)
        raise ConfigError(f"Unsupported source type: {self.type}")

    def to_reference(self) -> FlakeReference:
        reference = FlakeReference.parse(self.to_flake_ref())
        if self.type == "nixpkgs":
            return FlakeReference(uri=reference.uri, revision=self.git_ref)
        return reference

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Source":
        if not isinstance(data, Mapping):
            raise ConfigError("Each source must be a mapping")
        kind = str(data.get("type", "")).lower()
        if kind in {"github", "gitlab", "sourcehut"}:
            owner, repo = data.get("owner"), data.get("repo")
            if not owner or not repo:
                raise ConfigError(f"{kind} source requires 'owner' and 'repo'")
            return cls(
                type=kind,
                owner=str(owner),
                repo=str(repo),
                description=data.get("description") if kind == "github" else None,
                attrs=FlakeRefAttrs.from_mapping(data),
            )
        if kind == "git":
            url = data.get("url")
            if not url:
                raise ConfigError("git source requires 'url'")
            return cls(type=kind, url=str(url), attrs=FlakeRefAttrs.from_mapping(data))
        if kind == "nixpkgs":
            channel = data.get("channel")
            git_ref = data.get("git_ref")
            if not channel:
                raise ConfigError("nixpkgs source requires 'channel'")
            return cls(type=kind, channel=str(channel), git_ref=str(git_ref) if git_ref else None)
        raise ConfigError(f"Unknown source type: {data.get('type')!r}")


def read_sources_file(path: Path) -> List[Source]:
    """Read sources from a TOML (``[[sources]]``) or JSON (array) file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read sources file {path}: {exc}") from exc

    if path.suffix == ".toml":
        try:
            document = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
        entries = document.get("sources", [])
    else:
        try:
            entries = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc

    if not isinstance(entries, list):
        raise ConfigError(f"{path.name} must contain a list of sources")
    return [Source.from_mapping(entry) for entry in entries]


def resolve_nixpkgs(
    channel: str,
    *,
    fetch: Callable[[Request, float], Dict[str, Any]] | None = None,
    token: str | None = None,
    policy: RetryPolicy | None = None,
    timeout: float = 30.0,
) -> Source:
    """Pin a nixpkgs channel to the head commit of its ``nixos-<channel>`` branch."""
    request = Request(
        GITHUB_BRANCH_URL.format(channel=channel),
        headers={"User-Agent": "nixos-search", "Accept": "application/vnd.github+json"},
    )
    github_token = token if token is not None else os.getenv("GITHUB_TOKEN")
    if github_token:
        request.add_header("Authorization", f"Bearer {github_token}")

    fetcher = fetch or _fetch_json
    payload = call_with_retry(
        lambda: fetcher(request, timeout),
        policy=policy or RetryPolicy(),
        description=f"nixpkgs channel {channel} resolution",
    )
    commit = payload.get("commit") if isinstance(payload, dict) else None
    sha = commit.get("sha") if isinstance(commit, dict) else None
    if not isinstance(sha, str) or not sha:
        raise ConfigError(f"GitHub returned no commit for channel {channel}")
    return Source(type="nixpkgs", channel=channel, git_ref=sha)


def _fetch_json(request: Request, timeout: float) -> Dict[str, Any]:
    try:
        with urlopen(request, timeout=timeout) as response:  # type: ignore[arg-type]
            raw = response.read()
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")
        if 400 <= exc.code < 500:
            raise ConfigError(f"GitHub returned {exc.code} {detail.strip()}") from exc
        raise TransportError(f"GitHub returned {exc.code} {detail.strip()}") from exc
    except URLError as exc:
        raise TransportError(f"GitHub request failed: {exc.reason}") from exc
    try:
        return json.loads(raw.decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise TransportError("GitHub returned invalid JSON") from exc


__all__ = ["FlakeRefAttrs", "Source", "read_sources_file", "resolve_nixpkgs"]

"""Flake-level metadata via ``nix flake metadata``."""

from __future__ import annotations

import json
import subprocess
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import MetadataCancelled, MetadataError, MetadataTimeout, TransportError
from ..logging import get_logger
from ..models import FlakeMetadata, FlakeReference
from .evaluator import DEFAULT_EXTRA_ARGS, _terminate

Runner = Callable[[Sequence[str], float, Optional[threading.Event]], str]

_POLL_INTERVAL = 0.1


class MetadataFetcher:
    """Reads flake metadata without writing a lock file."""

    def __init__(
        self,
        *,
        executable: str = "nix",
        timeout: float = 120.0,
        extra_args: Sequence[str] = (),
        runner: Runner | None = None,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.extra_args = list(extra_args)
        self._runner = runner or self._default_runner
        self.logger = get_logger("nix.metadata")

    def build_command(self, reference: FlakeReference) -> List[str]:
        return [
            self.executable,
            "flake",
            "metadata",
            *DEFAULT_EXTRA_ARGS,
            *self.extra_args,
            "--json",
            "--no-write-lock-file",
            reference.uri,
        ]

    def fetch(
        self, reference: FlakeReference, cancel: threading.Event | None = None
    ) -> FlakeMetadata:
        """Return the metadata record for ``reference``.

        Raises :class:`MetadataError` when the engine rejects the reference or
        ``cancel`` is set while it runs, and :class:`TransportError` for
        failures worth retrying.
        """
        command = self.build_command(reference)
        self.logger.debug("Fetching metadata for %s", reference)
        output = self._runner(command, self.timeout, cancel)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise MetadataError(f"Metadata for {reference} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MetadataError(f"Metadata for {reference} is not an object")
        return parse_metadata(reference, payload)

    @staticmethod
    def _default_runner(
        args: Sequence[str], timeout: float, cancel: threading.Event | None = None
    ) -> str:
        try:
            process = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise TransportError(f"Unable to run metadata command: {exc}") from exc

        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _terminate(process)
                process.communicate()
                raise MetadataCancelled("Metadata command cancelled")
            if time.monotonic() >= deadline:
                _terminate(process)
                process.communicate()
                raise MetadataTimeout(f"Metadata command exceeded {timeout:.0f}s")

        if process.returncode != 0:
            raise MetadataError(
                f"Metadata command failed with exit code {process.returncode}: {(stderr or '').strip()}"
            )
        return stdout


def parse_metadata(reference: FlakeReference, payload: Mapping[str, Any]) -> FlakeMetadata:
    """Map the engine's metadata JSON to :class:`FlakeMetadata`."""
    locked = _as_dict(payload.get("locked"))
    revision = _as_str(payload.get("revision")) or _as_str(locked.get("rev")) or reference.revision
    last_modified = payload.get("lastModified", locked.get("lastModified"))
    return FlakeMetadata(
        reference=reference,
        description=_as_str(payload.get("description")),
        last_modified=last_modified if isinstance(last_modified, int) else None,
        resolved_url=_as_str(payload.get("resolvedUrl")),
        locked_url=_as_str(payload.get("url")) or _as_str(payload.get("lockedUrl")),
        revision=revision,
        inputs=_root_inputs(payload),
    )


def _root_inputs(payload: Mapping[str, Any]) -> tuple:
    nodes = _as_dict(_as_dict(payload.get("locks")).get("nodes"))
    root_name = _as_str(_as_dict(payload.get("locks")).get("root")) or "root"
    root = _as_dict(nodes.get(root_name))
    return tuple(sorted(_as_dict(root.get("inputs")).keys()))


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


__all__ = ["MetadataFetcher", "parse_metadata"]

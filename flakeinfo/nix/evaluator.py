"""Adapter around the external evaluation engine (``nix eval``)."""

from __future__ import annotations

import json
import subprocess
import threading
import time
from collections import deque
from importlib import resources
from pathlib import Path
from typing import Any, Callable, Deque, Iterator, List, Mapping, Optional, Sequence

from ..errors import (
    EngineAborted,
    EngineCrashed,
    EvaluationCancelled,
    EvaluationTimeout,
    MalformedOutput,
)
from ..logging import get_logger
from ..models import FlakeReference, RawAttribute

DEFAULT_EXTRA_ARGS = ("--extra-experimental-features", "nix-command flakes")
_STDERR_TAIL = 20
_TERMINATE_GRACE = 5.0
_POLL_INTERVAL = 0.1


def default_program() -> Path:
    """Path of the extraction program shipped with the package."""
    return Path(str(resources.files("flakeinfo.nix").joinpath("extract.nix")))


class NixEvaluator:
    """Runs the extraction program for one platform and streams its records.

    The engine prints one JSON record per line. Records carrying ``error``
    become failed attributes; a record carrying ``fatal`` aborts the platform.
    """

    def __init__(
        self,
        *,
        executable: str = "nix",
        program: Path | None = None,
        timeout: float = 900.0,
        extra_args: Sequence[str] = (),
        spawn: Callable[[List[str]], subprocess.Popen] | None = None,
    ) -> None:
        self.executable = executable
        self.program = program or default_program()
        self.timeout = timeout
        self.extra_args = list(extra_args)
        self._spawn = spawn or self._default_spawn
        self.logger = get_logger("nix.evaluator")

    def build_command(self, reference: FlakeReference, platform: str, *, full: bool) -> List[str]:
        return [
            self.executable,
            "eval",
            *DEFAULT_EXTRA_ARGS,
            *self.extra_args,
            "--impure",
            "--raw",
            "--no-write-lock-file",
            "--file",
            str(self.program),
            "--argstr",
            "flake",
            reference.uri,
            "--argstr",
            "system",
            platform,
            "--arg",
            "full",
            "true" if full else "false",
        ]

    def evaluate(
        self,
        reference: FlakeReference,
        platform: str,
        *,
        full: bool = True,
        cancel: threading.Event | None = None,
    ) -> Iterator[RawAttribute]:
        """Yield raw attributes as the engine emits them.

        Raises a :class:`~flakeinfo.errors.FatalError` subclass when the engine
        crashes, times out, emits unparseable output or the run is cancelled.
        """
        command = self.build_command(reference, platform, full=full)
        self.logger.debug("Evaluating %s for %s (full=%s)", reference, platform, full)
        try:
            process = self._spawn(command)
        except OSError as exc:
            raise EngineCrashed(f"Unable to start {self.executable}: {exc}", platform=platform) from exc

        stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL)
        stderr_thread = threading.Thread(
            target=_drain, args=(process.stderr, stderr_tail), name="flakeinfo-stderr", daemon=True
        )
        stderr_thread.start()

        finished = threading.Event()
        expired = threading.Event()
        watchdog = threading.Thread(
            target=self._watch,
            args=(process, time.monotonic() + self.timeout, cancel, finished, expired),
            name="flakeinfo-watchdog",
            daemon=True,
        )
        watchdog.start()

        try:
            assert process.stdout is not None
            for line in process.stdout:
                for record in self._parse_line(line, platform):
                    yield _to_raw_attribute(record, platform, full=full)
            returncode = process.wait()
            stderr_thread.join(timeout=_TERMINATE_GRACE)
        except (MalformedOutput, EngineAborted):
            _terminate(process)
            raise
        finally:
            finished.set()
            if process.poll() is None:
                _terminate(process)

        if expired.is_set():
            raise EvaluationTimeout(
                f"Evaluation of {reference} for {platform} exceeded {self.timeout:.0f}s",
                platform=platform,
            )
        if cancel is not None and cancel.is_set():
            raise EvaluationCancelled(f"Evaluation of {reference} cancelled", platform=platform)
        if returncode != 0:
            detail = " ".join(line.strip() for line in stderr_tail if line.strip())
            raise EngineCrashed(
                f"{self.executable} exited with status {returncode} for {platform}: {detail}".rstrip(": "),
                platform=platform,
            )

    def _parse_line(self, line: str, platform: str) -> List[Mapping[str, Any]]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise MalformedOutput(
                f"Unparseable engine output for {platform}: {stripped[:120]}", platform=platform
            ) from exc
        records = payload if isinstance(payload, list) else [payload]
        for record in records:
            if not isinstance(record, dict):
                raise MalformedOutput(
                    f"Engine record for {platform} is not an object: {record!r}"[:200],
                    platform=platform,
                )
            if "fatal" in record:
                raise EngineAborted(str(record["fatal"]), platform=platform)
        return records

    def _watch(
        self,
        process: subprocess.Popen,
        deadline: float,
        cancel: threading.Event | None,
        finished: threading.Event,
        expired: threading.Event,
    ) -> None:
        while not finished.is_set():
            if cancel is not None and cancel.is_set():
                self.logger.debug("Cancellation requested; terminating engine")
                _terminate(process)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                expired.set()
                self.logger.debug("Engine exceeded its time budget; terminating")
                _terminate(process)
                return
            finished.wait(min(remaining, _POLL_INTERVAL))

    @staticmethod
    def _default_spawn(command: List[str]) -> subprocess.Popen:
        return subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )


def _to_raw_attribute(record: Mapping[str, Any], platform: str, *, full: bool) -> RawAttribute:
    path = record.get("attribute_path")
    if not isinstance(path, list) or not path or not all(isinstance(item, str) for item in path):
        raise MalformedOutput(f"Engine record without attribute_path: {record!r}"[:200], platform=platform)
    record_platform = record.get("platform") or platform
    if "error" in record:
        return RawAttribute.failure(path, str(record_platform), str(record["error"]), full=full)
    value = record.get("value")
    if not isinstance(value, dict):
        value = {}
    return RawAttribute.success(path, str(record_platform), value, full=full)


def _drain(stream: Optional[Any], sink: Deque[str]) -> None:
    if stream is None:
        return
    for line in stream:
        sink.append(line)


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=_TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


__all__ = ["NixEvaluator", "default_program"]

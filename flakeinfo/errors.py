"""Exception hierarchy shared by flake-info components."""

from __future__ import annotations

from typing import Optional


class FlakeInfoError(RuntimeError):
    """Base class for all flake-info failures."""


class ConfigError(FlakeInfoError):
    """Raised for configuration problems detected at startup."""


class TransportError(FlakeInfoError):
    """Retryable I/O failure (subprocess spawn, timeout, network)."""


class FatalError(FlakeInfoError):
    """Evaluation of one platform could not complete.

    Only aborts the platform it was raised for; the orchestrator decides
    whether that also aborts the run.
    """

    def __init__(self, message: str, *, platform: Optional[str] = None) -> None:
        super().__init__(message)
        self.platform = platform


class EvaluationTimeout(FatalError):
    """The engine exceeded its wall-clock budget and was terminated."""


class EngineCrashed(FatalError):
    """The engine exited non-zero without emitting a fatal marker."""


class MalformedOutput(FatalError):
    """The engine produced a line that is not a structured record."""


class EngineAborted(FatalError):
    """The engine reported a fatal marker record."""


class EvaluationCancelled(FatalError):
    """The run was cancelled while the engine was still running."""


class MetadataError(FlakeInfoError):
    """The metadata command rejected the flake reference."""


class MetadataTimeout(TransportError):
    """The metadata command did not answer within its budget."""


class MetadataCancelled(MetadataError):
    """The run was cancelled while the metadata command was running."""


class BackendError(TransportError):
    """The search backend rejected a request."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        """Client errors are deterministic, except request timeouts and throttling."""
        if self.status is None or self.status >= 500:
            return True
        return self.status in (408, 429)


class RetryExhausted(FlakeInfoError):
    """All attempts of a retried operation failed."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class PublishError(FlakeInfoError):
    """Publication of one generation failed; the previous generation stays live."""

    def __init__(self, message: str, *, generation: object = None) -> None:
        super().__init__(message)
        self.generation = generation


__all__ = [
    "BackendError",
    "ConfigError",
    "EngineAborted",
    "EngineCrashed",
    "EvaluationCancelled",
    "EvaluationTimeout",
    "FatalError",
    "FlakeInfoError",
    "MalformedOutput",
    "MetadataCancelled",
    "MetadataError",
    "MetadataTimeout",
    "PublishError",
    "RetryExhausted",
    "TransportError",
]

"""Core data models shared across flake-info components."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

from .errors import ConfigError

UNKNOWN_LICENSE = "unknown"


@dataclass(frozen=True)
class FlakeReference:
    """Identifies a flake source plus an optional pinned revision."""

    uri: str
    revision: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "FlakeReference":
        """Parse a flake reference string such as ``github:owner/repo?rev=abc``."""
        candidate = (text or "").strip()
        if not candidate or any(char.isspace() for char in candidate):
            raise ConfigError(f"Malformed flake reference: {text!r}")
        if ":" not in candidate and not candidate.startswith(("/", ".")):
            raise ConfigError(f"Malformed flake reference: {text!r}")
        scheme, _, rest = candidate.partition(":")
        if ":" in candidate and (not scheme or not rest):
            raise ConfigError(f"Malformed flake reference: {text!r}")
        query = urlsplit(candidate).query if "?" in candidate else ""
        params = dict(parse_qsl(query))
        return cls(uri=candidate, revision=params.get("rev"))

    @property
    def source(self) -> str:
        """The reference without its query string; stable across revisions."""
        return self.uri.split("?", 1)[0]

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class FlakeMetadata:
    """Flake-level description returned by the metadata command."""

    reference: FlakeReference
    description: Optional[str] = None
    last_modified: Optional[int] = None
    resolved_url: Optional[str] = None
    locked_url: Optional[str] = None
    revision: Optional[str] = None
    inputs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RawAttribute:
    """One record emitted by the evaluation engine.

    ``reason`` is set for failed attributes and ``value`` for successful ones.
    ``full`` tells whether the record came from a full or lightweight pass.
    """

    attribute_path: Tuple[str, ...]
    platform: str
    value: Optional[Mapping[str, Any]] = field(default=None, hash=False)
    reason: Optional[str] = None
    full: bool = True

    @classmethod
    def success(
        cls,
        attribute_path: Tuple[str, ...] | list,
        platform: str,
        value: Mapping[str, Any],
        *,
        full: bool = True,
    ) -> "RawAttribute":
        return cls(tuple(attribute_path), platform, value=dict(value), full=full)

    @classmethod
    def failure(
        cls,
        attribute_path: Tuple[str, ...] | list,
        platform: str,
        reason: str,
        *,
        full: bool = True,
    ) -> "RawAttribute":
        return cls(tuple(attribute_path), platform, reason=reason or "evaluation failed", full=full)

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class PackageEntity:
    """Canonical package record.

    ``attribute_path`` has the platform segment removed so the same package on
    different platforms shares one path.
    """

    attribute_path: Tuple[str, ...]
    attribute_name: str
    name: str
    origin_platform: str
    version: Optional[str] = None
    description: Optional[str] = None
    long_description: Optional[str] = None
    licenses: FrozenSet[str] = frozenset()
    outputs: FrozenSet[str] = frozenset()
    default_output: Optional[str] = None
    supported_platforms: FrozenSet[str] = frozenset()
    broken: bool = False
    failure_reason: Optional[str] = None
    homepages: Tuple[str, ...] = ()
    maintainers: Tuple[str, ...] = ()
    position: Optional[str] = None
    lightweight: bool = False

    kind = "package"


@dataclass(frozen=True)
class AppEntity:
    """Canonical application record for one platform."""

    attribute_path: Tuple[str, ...]
    attribute_name: str
    program: str
    platform: str
    app_type: str = "app"

    kind = "app"


@dataclass(frozen=True)
class OptionEntity:
    """Canonical NixOS-style module option."""

    attribute_path: Tuple[str, ...]
    name: str
    platform: str
    type_description: Optional[str] = None
    default: Optional[str] = None
    example: Optional[str] = None
    description: Optional[str] = None
    declarations: Tuple[str, ...] = ()
    flake_module: Optional[str] = None

    kind = "option"


@dataclass(frozen=True)
class Skip:
    """Normalizer verdict for a record that must not be indexed."""

    attribute_path: Tuple[str, ...]
    platform: str
    reason: str


Entity = Union[PackageEntity, AppEntity, OptionEntity]


@dataclass(frozen=True, order=True)
class IndexGeneration:
    """Monotonic publication batch token for one flake source."""

    source: str
    number: int

    @property
    def token(self) -> str:
        return f"g{self.number:06d}"


@dataclass(frozen=True)
class IndexDocument:
    """Entity wrapped with its deterministic document identifier."""

    id: str
    kind: str
    entity: Union[PackageEntity, AppEntity, OptionEntity, FlakeMetadata] = field(hash=False)

    def to_source(self) -> Dict[str, Any]:
        """Return the JSON body written to the search backend."""
        body = entity_to_dict(self.entity)
        body["type"] = self.kind
        return body


def entity_to_dict(entity: object) -> Dict[str, Any]:
    """Serialise an entity to JSON-compatible values with sets sorted."""
    data: Dict[str, Any] = {}
    for item in fields(entity):  # type: ignore[arg-type]
        value = getattr(entity, item.name)
        data[item.name] = _to_json(value)
    return data


def _to_json(value: Any) -> Any:
    if isinstance(value, FlakeReference):
        return {"uri": value.uri, "revision": value.revision}
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return [_to_json(item) for item in value]
    return value


__all__ = [
    "AppEntity",
    "Entity",
    "FlakeMetadata",
    "FlakeReference",
    "IndexDocument",
    "IndexGeneration",
    "OptionEntity",
    "PackageEntity",
    "RawAttribute",
    "Skip",
    "UNKNOWN_LICENSE",
    "entity_to_dict",
]

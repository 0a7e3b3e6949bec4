"""Maps raw engine records to canonical package, app and option entities.

Everything in this module is pure: the same :class:`RawAttribute` always
yields an equal result and nothing here performs I/O or logging.
"""

from __future__ import annotations

import json
import re
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from .models import (
    UNKNOWN_LICENSE,
    AppEntity,
    OptionEntity,
    PackageEntity,
    RawAttribute,
    Skip,
)

PACKAGE_NAMESPACES = frozenset({"packages", "legacyPackages"})
APP_NAMESPACES = frozenset({"apps"})
OPTION_NAMESPACES = frozenset({"nixosModules", "nixosModule", "options"})

LITERAL_TYPES = frozenset({"literalExpression", "literalExample", "literalMD", "literalDocBook"})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")

NormalizeResult = Union[PackageEntity, AppEntity, OptionEntity, Skip]


def normalize(raw: RawAttribute) -> NormalizeResult:
    """Dispatch on the first attribute path segment."""
    namespace = raw.attribute_path[0] if raw.attribute_path else ""
    if namespace in PACKAGE_NAMESPACES:
        return _normalize_package(raw)
    if namespace in APP_NAMESPACES:
        return _normalize_app(raw)
    if namespace in OPTION_NAMESPACES:
        return _normalize_option(raw)
    return Skip(raw.attribute_path, raw.platform, f"unsupported namespace {namespace!r}")


def split_name_version(name: str) -> Tuple[str, Optional[str]]:
    """Split ``<base>-<version>`` at the rightmost hyphen followed by a digit.

    >>> split_name_version("hello-2.12")
    ('hello', '2.12')
    >>> split_name_version("python3.11-requests-2.31.0")
    ('python3.11-requests', '2.31.0')
    >>> split_name_version("hello")
    ('hello', None)
    """
    index = len(name) - 2
    while index > 0:
        if name[index] == "-" and name[index + 1].isdigit():
            return name[:index], name[index + 1 :]
        index -= 1
    return name, None


def flatten_licenses(value: Any) -> FrozenSet[str]:
    """Reduce the engine's license value to a set of identifiers.

    Absent licenses give an empty set; shapes that carry no identifier map to
    :data:`~flakeinfo.models.UNKNOWN_LICENSE`.
    """
    if value is None:
        return frozenset()
    return frozenset(_license_ids(value))


def pretty_print_value(value: Any, indent: int = 0) -> str:
    """Render an option value as Nix-like text without interpreting it."""
    if isinstance(value, dict) and value.get("_type") in LITERAL_TYPES:
        return str(value.get("text", ""))
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    if isinstance(value, str):
        return _quote(value)
    pad = "  " * (indent + 1)
    closing = "  " * indent
    if isinstance(value, list):
        if not value:
            return "[ ]"
        items = [f"{pad}{pretty_print_value(item, indent + 1)}" for item in value]
        return "[\n" + "\n".join(items) + f"\n{closing}]"
    if isinstance(value, dict):
        if not value:
            return "{ }"
        entries = [
            f"{pad}{_attr_name(key)} = {pretty_print_value(value[key], indent + 1)};"
            for key in sorted(value)
        ]
        return "{\n" + "\n".join(entries) + f"\n{closing}}}"
    return _quote(str(value))


# ----------------------------------------------------------------------
# Packages


def _normalize_package(raw: RawAttribute) -> NormalizeResult:
    path = raw.attribute_path
    if len(path) < 3:
        return Skip(path, raw.platform, "package path lacks platform or name")
    attribute_path = (path[0], *path[2:])
    attribute_name = ".".join(path[2:])
    platforms = frozenset({raw.platform})

    if not raw.ok:
        return PackageEntity(
            attribute_path=attribute_path,
            attribute_name=attribute_name,
            name=attribute_name,
            origin_platform=raw.platform,
            supported_platforms=platforms,
            broken=True,
            failure_reason=raw.reason,
            lightweight=not raw.full,
        )

    value = raw.value or {}
    if not raw.full:
        return PackageEntity(
            attribute_path=attribute_path,
            attribute_name=attribute_name,
            name=attribute_name,
            origin_platform=raw.platform,
            supported_platforms=platforms,
            lightweight=True,
        )

    name, version = _name_and_version(value, attribute_name)
    outputs = frozenset(_str_items(value.get("outputs")))
    return PackageEntity(
        attribute_path=attribute_path,
        attribute_name=attribute_name,
        name=name,
        origin_platform=raw.platform,
        version=version,
        description=_str_or_none(value.get("description")),
        long_description=_str_or_none(value.get("longDescription")),
        licenses=flatten_licenses(value.get("license")),
        outputs=outputs,
        default_output=_str_or_none(value.get("outputName")),
        supported_platforms=platforms,
        broken=value.get("broken") is True,
        homepages=tuple(_str_items(value.get("homepage"))),
        maintainers=tuple(_str_items(value.get("maintainers"))),
        position=_str_or_none(value.get("position")),
    )


def _name_and_version(value: Mapping[str, Any], attribute_name: str) -> Tuple[str, Optional[str]]:
    pname = _str_or_none(value.get("pname"))
    version = _str_or_none(value.get("version"))
    if pname and version:
        return pname, version
    full_name = _str_or_none(value.get("name")) or attribute_name
    return split_name_version(full_name)


def _license_ids(value: Any) -> Iterable[str]:
    if isinstance(value, list):
        ids: List[str] = []
        for item in value:
            ids.extend(_license_ids(item))
        return ids
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    if isinstance(value, dict):
        for key in ("spdxId", "shortName", "fullName"):
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return [candidate.strip()]
    return [UNKNOWN_LICENSE]


# ----------------------------------------------------------------------
# Apps


def _normalize_app(raw: RawAttribute) -> NormalizeResult:
    path = raw.attribute_path
    if len(path) < 3:
        return Skip(path, raw.platform, "app path lacks platform or name")
    if not raw.ok:
        return Skip(path, raw.platform, f"app failed to evaluate: {raw.reason}")
    value = raw.value or {}
    program = _str_or_none(value.get("program"))
    if not program:
        return Skip(path, raw.platform, "app has no program path")
    return AppEntity(
        attribute_path=(path[0], *path[2:]),
        attribute_name=".".join(path[2:]),
        program=program,
        platform=raw.platform,
        app_type=_str_or_none(value.get("type")) or "app",
    )


# ----------------------------------------------------------------------
# Options


def _normalize_option(raw: RawAttribute) -> NormalizeResult:
    path = raw.attribute_path
    if not raw.ok:
        return Skip(path, raw.platform, f"option failed to evaluate: {raw.reason}")
    value = raw.value or {}
    name = _str_or_none(value.get("name"))
    if not name:
        return Skip(path, raw.platform, "option has no name")
    module = path[1] if len(path) > 1 and path[0] != "options" else None
    return OptionEntity(
        attribute_path=(*path, *name.split(".")),
        name=name,
        platform=raw.platform,
        type_description=_str_or_none(value.get("type")),
        default=_optional_pretty(value.get("default")),
        example=_optional_pretty(value.get("example")),
        description=_text_of(value.get("description")),
        declarations=tuple(_str_items(value.get("declarations"))),
        flake_module=module,
    )


def _optional_pretty(value: Any) -> Optional[str]:
    if value is None:
        return None
    return pretty_print_value(value)


def _text_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("text")
    return _str_or_none(value)


# ----------------------------------------------------------------------
# Helpers


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _str_items(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item.strip()]
    return []


def _quote(text: str) -> str:
    escaped = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("${", "\\${")
    )
    return f'"{escaped}"'


def _attr_name(key: str) -> str:
    return key if _IDENTIFIER.match(key) else _quote(key)


__all__ = [
    "APP_NAMESPACES",
    "NormalizeResult",
    "OPTION_NAMESPACES",
    "PACKAGE_NAMESPACES",
    "flatten_licenses",
    "normalize",
    "pretty_print_value",
    "split_name_version",
]

"""Tests for flakeinfo.normalizer."""

from __future__ import annotations

import pytest

from flakeinfo.models import AppEntity, OptionEntity, PackageEntity, RawAttribute, Skip
from flakeinfo.normalizer import (
    flatten_licenses,
    normalize,
    pretty_print_value,
    split_name_version,
)

LINUX = "x86_64-linux"


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("hello-2.12", ("hello", "2.12")),
        ("python3.11-requests-2.31.0", ("python3.11-requests", "2.31.0")),
        ("foo-bar-1.0-rc1", ("foo-bar", "1.0-rc1")),
        ("foo-bar-1.0-2", ("foo-bar-1.0", "2")),
        ("hello", ("hello", None)),
        ("-1.0", ("-1.0", None)),
        ("tool-", ("tool-", None)),
    ],
)
def test_split_name_version(name: str, expected: tuple) -> None:
    assert split_name_version(name) == expected


def test_split_name_version_rejoins_to_input() -> None:
    for name in ["hello-2.12", "a-b-c-3", "x-1-2-3", "no-version-here"]:
        base, version = split_name_version(name)
        rebuilt = f"{base}-{version}" if version is not None else base
        assert rebuilt == name
        if version is not None:
            assert base
            assert version[0].isdigit()


def test_flatten_licenses_shapes() -> None:
    assert flatten_licenses(None) == frozenset()
    assert flatten_licenses([]) == frozenset()
    assert flatten_licenses("MIT") == frozenset({"MIT"})
    assert flatten_licenses({"spdxId": "GPL-3.0-or-later", "shortName": "gpl3Plus"}) == frozenset(
        {"GPL-3.0-or-later"}
    )
    assert flatten_licenses([{"shortName": "mit"}, [{"fullName": "Apache 2.0"}]]) == frozenset(
        {"mit", "Apache 2.0"}
    )
    assert flatten_licenses(42) == frozenset({"unknown"})
    assert flatten_licenses({"free": True}) == frozenset({"unknown"})


def test_full_package_record() -> None:
    raw = RawAttribute.success(
        ["packages", LINUX, "hello"],
        LINUX,
        {
            "name": "hello-2.12",
            "description": "Greets the world",
            "license": {"spdxId": "GPL-3.0-or-later"},
            "outputs": ["out", "man"],
            "outputName": "out",
            "homepage": "https://example.org/hello",
        },
    )

    entity = normalize(raw)

    assert isinstance(entity, PackageEntity)
    assert entity.attribute_path == ("packages", "hello")
    assert entity.attribute_name == "hello"
    assert entity.name == "hello"
    assert entity.version == "2.12"
    assert entity.licenses == frozenset({"GPL-3.0-or-later"})
    assert entity.outputs == frozenset({"out", "man"})
    assert entity.default_output == "out"
    assert entity.supported_platforms == frozenset({LINUX})
    assert entity.homepages == ("https://example.org/hello",)
    assert not entity.broken


def test_package_prefers_explicit_pname_and_version() -> None:
    raw = RawAttribute.success(
        ["legacyPackages", LINUX, "python3Packages", "requests"],
        LINUX,
        {"name": "python3.11-requests-2.31.0", "pname": "requests", "version": "2.31.0"},
    )

    entity = normalize(raw)

    assert isinstance(entity, PackageEntity)
    assert entity.attribute_path == ("legacyPackages", "python3Packages", "requests")
    assert entity.attribute_name == "python3Packages.requests"
    assert (entity.name, entity.version) == ("requests", "2.31.0")


def test_failed_package_becomes_broken_entity() -> None:
    raw = RawAttribute.failure(["packages", LINUX, "broken-tool"], LINUX, "evaluation error")

    entity = normalize(raw)

    assert isinstance(entity, PackageEntity)
    assert entity.broken
    assert entity.failure_reason == "evaluation error"
    assert entity.name == "broken-tool"
    assert entity.version is None


def test_lightweight_package_is_minimal() -> None:
    raw = RawAttribute.success(["packages", "aarch64-linux", "hello"], "aarch64-linux", {}, full=False)

    entity = normalize(raw)

    assert isinstance(entity, PackageEntity)
    assert entity.lightweight
    assert entity.description is None
    assert entity.supported_platforms == frozenset({"aarch64-linux"})


def test_app_without_program_is_skipped() -> None:
    raw = RawAttribute.success(["apps", LINUX, "default"], LINUX, {"type": "app"})

    result = normalize(raw)

    assert isinstance(result, Skip)
    assert "program" in result.reason


def test_app_record() -> None:
    raw = RawAttribute.success(
        ["apps", LINUX, "hello"], LINUX, {"type": "app", "program": "/nix/store/abc-hello/bin/hello"}
    )

    entity = normalize(raw)

    assert isinstance(entity, AppEntity)
    assert entity.attribute_path == ("apps", "hello")
    assert entity.program.endswith("/bin/hello")
    assert entity.platform == LINUX


def test_option_record_pretty_prints_values() -> None:
    raw = RawAttribute.success(
        ["nixosModules", "default"],
        LINUX,
        {
            "name": "services.hello.enable",
            "type": "boolean",
            "default": False,
            "example": {"_type": "literalExpression", "text": "true"},
            "description": {"_type": "mdDoc", "text": "Whether to enable hello."},
            "declarations": ["modules/hello.nix"],
        },
    )

    entity = normalize(raw)

    assert isinstance(entity, OptionEntity)
    assert entity.attribute_path == ("nixosModules", "default", "services", "hello", "enable")
    assert entity.default == "false"
    assert entity.example == "true"
    assert entity.description == "Whether to enable hello."
    assert entity.flake_module == "default"


def test_pretty_print_nested_values() -> None:
    rendered = pretty_print_value({"port": 8080, "hosts": ["a", "b"], "with space": None})

    assert rendered == (
        "{\n"
        "  hosts = [\n"
        '    "a"\n'
        '    "b"\n'
        "  ];\n"
        "  port = 8080;\n"
        '  "with space" = null;\n'
        "}"
    )
    assert pretty_print_value('say "${x}"') == '"say \\"\\${x}\\""'


def test_unknown_namespace_is_skipped() -> None:
    result = normalize(RawAttribute.success(["checks", LINUX, "test"], LINUX, {}))

    assert isinstance(result, Skip)


def test_normalize_is_deterministic() -> None:
    raw = RawAttribute.success(
        ["packages", LINUX, "hello"], LINUX, {"name": "hello-2.12", "license": ["mit", "bsd3"]}
    )

    assert normalize(raw) == normalize(raw)


def test_package_marked_broken_keeps_its_metadata() -> None:
    raw = RawAttribute.success(
        ["packages", LINUX, "old-tool"],
        LINUX,
        {
            "name": "old-tool-0.9",
            "description": "An unmaintained tool",
            "license": {"spdxId": "MIT"},
            "broken": True,
        },
    )

    entity = normalize(raw)

    assert isinstance(entity, PackageEntity)
    assert entity.broken
    assert entity.failure_reason is None
    assert (entity.name, entity.version) == ("old-tool", "0.9")
    assert entity.description == "An unmaintained tool"
    assert entity.licenses == frozenset({"MIT"})
    assert entity.supported_platforms == frozenset({LINUX})

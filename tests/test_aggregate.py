"""Tests for the cross-platform merge."""

from __future__ import annotations

import pytest

from flakeinfo.aggregate import (
    POLICY_CONFIRMED,
    POLICY_EXISTENCE,
    PlatformResult,
    merge_platform_results,
)
from flakeinfo.models import AppEntity, RawAttribute
from flakeinfo.normalizer import normalize

PRIMARY = "x86_64-linux"
ARM = "aarch64-linux"
DARWIN = "aarch64-darwin"


def _package(attr: str, platform: str, *, full: bool, broken: bool = False, **value):
    path = ["packages", platform, attr]
    if broken:
        raw = RawAttribute.failure(path, platform, "marked broken", full=full)
    else:
        raw = RawAttribute.success(path, platform, value, full=full)
    return normalize(raw)


def _scenario() -> list:
    primary = PlatformResult(
        platform=PRIMARY,
        full=True,
        packages=[
            _package("hello", PRIMARY, full=True, name="hello-2.12", description="Greets"),
            _package("broken-tool", PRIMARY, full=True, broken=True),
        ],
    )
    arm = PlatformResult(
        platform=ARM,
        full=False,
        packages=[
            _package("hello", ARM, full=False),
            _package("broken-tool", ARM, full=False),
            _package("arm-only", ARM, full=False),
        ],
    )
    return [primary, arm]


def test_confirmed_policy_merges_hello_and_keeps_broken_tool() -> None:
    aggregate = merge_platform_results(_scenario(), primary=PRIMARY, policy=POLICY_CONFIRMED)

    by_name = {package.attribute_name: package for package in aggregate.packages}
    assert set(by_name) == {"hello", "broken-tool"}
    hello = by_name["hello"]
    assert hello.supported_platforms == frozenset({PRIMARY, ARM})
    assert hello.description == "Greets"
    assert hello.version == "2.12"
    broken = by_name["broken-tool"]
    assert broken.broken
    assert broken.supported_platforms == frozenset({PRIMARY})
    assert aggregate.dropped == [(("packages", "arm-only"), "arm-only")]
    assert aggregate.broken_count == 1
    assert aggregate.succeeded_count == 1
    assert aggregate.skipped_count == 1


def test_existence_policy_includes_lightweight_only_attributes() -> None:
    aggregate = merge_platform_results(_scenario(), primary=PRIMARY, policy=POLICY_EXISTENCE)

    by_name = {package.attribute_name: package for package in aggregate.packages}
    assert set(by_name) == {"arm-only", "broken-tool", "hello"}
    assert by_name["arm-only"].lightweight
    assert by_name["arm-only"].supported_platforms == frozenset({ARM})
    assert by_name["broken-tool"].supported_platforms == frozenset({PRIMARY, ARM})
    assert aggregate.dropped == []


def test_lightweight_failure_adds_no_platform() -> None:
    results = [
        PlatformResult(PRIMARY, True, packages=[_package("hello", PRIMARY, full=True, name="hello-1")]),
        PlatformResult(ARM, False, packages=[_package("hello", ARM, full=False, broken=True)]),
    ]

    aggregate = merge_platform_results(results, primary=PRIMARY, policy=POLICY_EXISTENCE)

    assert aggregate.packages[0].supported_platforms == frozenset({PRIMARY})


def test_lightweight_only_failures_are_not_published() -> None:
    results = [
        PlatformResult(PRIMARY, True),
        PlatformResult(ARM, False, packages=[_package("ghost", ARM, full=False, broken=True)]),
    ]

    aggregate = merge_platform_results(results, primary=PRIMARY, policy=POLICY_EXISTENCE)

    assert aggregate.packages == []


def test_merge_ignores_completion_order() -> None:
    results = _scenario() + [
        PlatformResult(DARWIN, False, packages=[_package("hello", DARWIN, full=False)]),
    ]

    forward = merge_platform_results(results, primary=PRIMARY)
    backward = merge_platform_results(list(reversed(results)), primary=PRIMARY)

    assert forward == backward
    assert [package.attribute_name for package in forward.packages] == ["broken-tool", "hello"]


def test_apps_are_kept_per_platform() -> None:
    app = AppEntity(("apps", "hello"), "hello", "/bin/hello", PRIMARY)
    arm_app = AppEntity(("apps", "hello"), "hello", "/bin/hello-arm", ARM)
    results = [
        PlatformResult(PRIMARY, True, apps=[app]),
        PlatformResult(ARM, False, apps=[arm_app]),
    ]

    aggregate = merge_platform_results(results, primary=PRIMARY)

    assert aggregate.apps == [arm_app, app]


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        merge_platform_results([], primary=PRIMARY, policy="sometimes")

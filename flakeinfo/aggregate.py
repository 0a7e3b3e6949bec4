"""Deterministic cross-platform merge of normalized entities."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from .models import AppEntity, OptionEntity, PackageEntity, Skip

POLICY_CONFIRMED = "confirmed"
POLICY_EXISTENCE = "existence"

PackageKey = Tuple[Tuple[str, ...], str]


@dataclass
class PlatformResult:
    """Everything one platform's evaluation produced."""

    platform: str
    full: bool
    packages: List[PackageEntity] = field(default_factory=list)
    apps: List[AppEntity] = field(default_factory=list)
    options: List[OptionEntity] = field(default_factory=list)
    skipped: List[Skip] = field(default_factory=list)


@dataclass
class Aggregate:
    """Merged entities for one flake, ordered by key."""

    packages: List[PackageEntity]
    apps: List[AppEntity]
    options: List[OptionEntity]
    skipped: List[Skip]
    dropped: List[PackageKey] = field(default_factory=list)

    @property
    def broken_count(self) -> int:
        return sum(1 for package in self.packages if package.broken)

    @property
    def succeeded_count(self) -> int:
        healthy = sum(1 for package in self.packages if not package.broken)
        return healthy + len(self.apps) + len(self.options)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped) + len(self.dropped)


def package_key(package: PackageEntity) -> PackageKey:
    return (package.attribute_path, package.attribute_name)


def merge_platform_results(
    results: Iterable[PlatformResult],
    *,
    primary: str,
    policy: str = POLICY_CONFIRMED,
) -> Aggregate:
    """Merge per-platform results keyed by attribute path.

    The primary platform's scalar fields always win. Non-primary platforms are
    visited in sorted order so completion order never changes the outcome.
    ``policy`` decides whether lightweight results may add platforms to
    attributes the primary platform did not confirm (see ``POLICY_*``).
    """
    if policy not in (POLICY_CONFIRMED, POLICY_EXISTENCE):
        raise ValueError(f"Unknown lightweight policy: {policy}")

    by_platform = {result.platform: result for result in results}
    ordered = _ordered_platforms(by_platform, primary)

    merged: Dict[PackageKey, PackageEntity] = {}
    primary_result = by_platform.get(primary)
    if primary_result is not None:
        for package in primary_result.packages:
            merged.setdefault(package_key(package), package)

    candidates: Dict[PackageKey, PackageEntity] = {}
    for platform in ordered:
        if platform == primary:
            continue
        for package in by_platform[platform].packages:
            key = package_key(package)
            base = merged.get(key)
            if base is not None:
                if package.broken:
                    continue
                if policy == POLICY_EXISTENCE or not base.broken:
                    merged[key] = _with_platform(base, platform)
                continue
            candidates[key] = _merge_candidate(candidates.get(key), package, platform)

    dropped: List[PackageKey] = []
    for key in sorted(candidates):
        candidate = candidates[key]
        if policy == POLICY_EXISTENCE and candidate.supported_platforms:
            merged[key] = candidate
        else:
            dropped.append(key)

    apps: Dict[Tuple[Tuple[str, ...], str], AppEntity] = {}
    options: Dict[Tuple[str, ...], OptionEntity] = {}
    skipped: List[Skip] = []
    for platform in ordered:
        result = by_platform[platform]
        for app in result.apps:
            apps.setdefault((app.attribute_path, app.platform), app)
        for option in result.options:
            options.setdefault(option.attribute_path, option)
        skipped.extend(result.skipped)

    return Aggregate(
        packages=[merged[key] for key in sorted(merged)],
        apps=[apps[key] for key in sorted(apps)],
        options=[options[key] for key in sorted(options)],
        skipped=skipped,
        dropped=dropped,
    )


def _ordered_platforms(by_platform: Dict[str, PlatformResult], primary: str) -> List[str]:
    others = sorted(platform for platform in by_platform if platform != primary)
    return ([primary] if primary in by_platform else []) + others


def _with_platform(package: PackageEntity, platform: str) -> PackageEntity:
    if platform in package.supported_platforms:
        return package
    return replace(package, supported_platforms=package.supported_platforms | {platform})


def _merge_candidate(
    existing: Optional[PackageEntity], package: PackageEntity, platform: str
) -> PackageEntity:
    """Fold a lightweight-only record into the entity seen so far for its key."""
    if existing is None:
        if package.broken:
            return replace(package, supported_platforms=frozenset())
        return package
    if package.broken:
        return existing
    if existing.broken:
        return replace(package, supported_platforms=frozenset({platform}))
    return _with_platform(existing, platform)


__all__ = [
    "Aggregate",
    "POLICY_CONFIRMED",
    "POLICY_EXISTENCE",
    "PlatformResult",
    "merge_platform_results",
    "package_key",
]

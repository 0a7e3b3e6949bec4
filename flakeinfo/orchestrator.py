"""Pipeline orchestration: metadata, per-platform evaluation, merge, publish."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .aggregate import Aggregate, PlatformResult, merge_platform_results
from .config import FlakeInfoConfig
from .errors import (
    FatalError,
    FlakeInfoError,
    MetadataError,
    PublishError,
    RetryExhausted,
    TransportError,
)
from .index.publisher import GenerationCounter, PublishResult, Publisher
from .logging import get_logger
from .models import (
    AppEntity,
    FlakeMetadata,
    FlakeReference,
    IndexGeneration,
    OptionEntity,
    PackageEntity,
    Skip,
)
from .nix.evaluator import NixEvaluator
from .nix.metadata import MetadataFetcher
from .normalizer import normalize
from .retry import RetryPolicy, call_with_retry


class RunState(str, Enum):
    """States of one flake's extraction run."""

    PENDING = "pending"
    METADATA_FETCHED = "metadata_fetched"
    EVALUATING = "evaluating"
    AGGREGATED = "aggregated"
    DONE = "done"
    ABORTED = "aborted"


class PublishOutcome(str, Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class RunReport:
    """What happened to one flake reference during a run."""

    reference: FlakeReference
    state: RunState = RunState.PENDING
    history: List[RunState] = field(default_factory=lambda: [RunState.PENDING])
    metadata: Optional[FlakeMetadata] = None
    platforms: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    succeeded: int = 0
    broken: int = 0
    skipped: int = 0
    generation: Optional[IndexGeneration] = None
    publish_outcome: PublishOutcome = PublishOutcome.SKIPPED
    publish_result: Optional[PublishResult] = None
    error: Optional[str] = None

    def transition(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)

    def abort(self, reason: str) -> None:
        self.error = reason
        self.publish_outcome = PublishOutcome.ABORTED
        self.transition(RunState.ABORTED)

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE and self.publish_outcome is not PublishOutcome.FAILED

    def summary(self) -> str:
        line = (
            f"{self.reference}: {self.state.value} "
            f"(succeeded={self.succeeded}, broken={self.broken}, skipped={self.skipped}, "
            f"publish={self.publish_outcome.value})"
        )
        if self.error:
            line += f" - {self.error}"
        return line


@dataclass
class FlakeExtraction:
    """Report plus the merged entities that were (or would be) published."""

    report: RunReport
    aggregate: Optional[Aggregate] = None


class Orchestrator:
    """Drives extraction runs for one or many flake references."""

    def __init__(
        self,
        config: FlakeInfoConfig | None = None,
        *,
        evaluator: NixEvaluator | None = None,
        metadata_fetcher: MetadataFetcher | None = None,
        publisher: Publisher | None = None,
        generations: GenerationCounter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or FlakeInfoConfig(root=Path.cwd())
        evaluation = self.config.evaluation
        self.evaluator = evaluator or NixEvaluator(
            executable=evaluation.executable,
            timeout=evaluation.timeout,
            extra_args=evaluation.extra_args,
        )
        self.metadata_fetcher = metadata_fetcher or MetadataFetcher(
            executable=evaluation.executable,
            timeout=self.config.runs.metadata_timeout,
            extra_args=evaluation.extra_args,
        )
        self.publisher = publisher
        self.generations = generations or GenerationCounter()
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.publish.max_retries,
            initial_delay=self.config.publish.backoff,
        )
        self._sleep = sleep
        self.logger = get_logger("orchestrator")

    def run(
        self,
        reference: FlakeReference,
        *,
        publish: bool = True,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        """Extract (and optionally publish) one flake."""
        return self.extract(reference, publish=publish, cancel=cancel).report

    def run_many(
        self,
        references: Sequence[FlakeReference],
        *,
        publish: bool = True,
        cancel: threading.Event | None = None,
    ) -> List[RunReport]:
        """Run several flakes concurrently; reports keep the input order."""
        workers = max(1, min(self.config.runs.flake_workers, len(references) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flakeinfo-flake") as pool:
            futures = [
                pool.submit(self.run, reference, publish=publish, cancel=cancel)
                for reference in references
            ]
            return [future.result() for future in futures]

    def extract(
        self,
        reference: FlakeReference,
        *,
        publish: bool = True,
        cancel: threading.Event | None = None,
    ) -> FlakeExtraction:
        report = RunReport(reference=reference)
        self.logger.info("Starting extraction for %s", reference)
        try:
            return self._extract(reference, report, publish=publish, cancel=cancel)
        except FlakeInfoError as exc:
            self.logger.error("Extraction for %s aborted: %s", reference, exc)
            report.abort(str(exc))
            return FlakeExtraction(report=report)

    # ------------------------------------------------------------------
    # Pipeline steps

    def _extract(
        self,
        reference: FlakeReference,
        report: RunReport,
        *,
        publish: bool,
        cancel: threading.Event | None,
    ) -> FlakeExtraction:
        if _cancelled(cancel):
            report.abort("run cancelled")
            return FlakeExtraction(report=report)
        try:
            report.metadata = self._fetch_metadata(reference, cancel)
        except (MetadataError, RetryExhausted) as exc:
            self.logger.error("Metadata fetch for %s failed: %s", reference, exc)
            report.abort(f"metadata fetch failed: {exc}")
            return FlakeExtraction(report=report)
        report.transition(RunState.METADATA_FETCHED)
        if _cancelled(cancel):
            report.abort("run cancelled")
            return FlakeExtraction(report=report)

        report.transition(RunState.EVALUATING)
        results = self._evaluate_platforms(reference, report, cancel)
        primary = self.config.evaluation.primary_platform
        if primary not in {result.platform for result in results}:
            report.abort(f"primary platform {primary} failed: {report.platforms.get(primary)}")
            return FlakeExtraction(report=report)
        if _cancelled(cancel):
            report.abort("run cancelled")
            return FlakeExtraction(report=report)

        aggregate = merge_platform_results(
            results,
            primary=primary,
            policy=self.config.evaluation.lightweight_policy,
        )
        report.succeeded = aggregate.succeeded_count
        report.broken = aggregate.broken_count
        report.skipped = aggregate.skipped_count
        report.transition(RunState.AGGREGATED)
        self.logger.info(
            "Aggregated %s: %d package(s), %d app(s), %d option(s)",
            reference,
            len(aggregate.packages),
            len(aggregate.apps),
            len(aggregate.options),
        )

        if publish and self.publisher is not None:
            self._publish(reference, aggregate, report)
        report.transition(RunState.DONE)
        return FlakeExtraction(report=report, aggregate=aggregate)

    def _fetch_metadata(
        self, reference: FlakeReference, cancel: threading.Event | None
    ) -> FlakeMetadata:
        return call_with_retry(
            lambda: self.metadata_fetcher.fetch(reference, cancel=cancel),
            policy=self.retry_policy,
            description=f"metadata fetch for {reference}",
            retry_on=(TransportError,),
            sleep=self._sleep,
            should_stop=cancel.is_set if cancel is not None else None,
        )

    def _evaluate_platforms(
        self,
        reference: FlakeReference,
        report: RunReport,
        cancel: threading.Event | None,
    ) -> List[PlatformResult]:
        evaluation = self.config.evaluation
        platforms = evaluation.target_platforms()
        workers = max(1, min(evaluation.platform_workers, len(platforms)))
        outcomes: Dict[str, PlatformResult | FatalError] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flakeinfo-eval") as pool:
            futures = {
                platform: pool.submit(
                    self._evaluate_platform,
                    reference,
                    platform,
                    platform == evaluation.primary_platform,
                    cancel,
                )
                for platform in platforms
            }
            for platform, future in futures.items():
                try:
                    outcomes[platform] = future.result()
                except FatalError as exc:
                    outcomes[platform] = exc

        results: List[PlatformResult] = []
        for platform in platforms:
            outcome = outcomes[platform]
            if isinstance(outcome, FatalError):
                message = f"platform {platform} skipped: {outcome}"
                report.platforms[platform] = f"failed: {outcome}"
                report.warnings.append(message)
                self.logger.warning("Evaluation of %s: %s", reference, message)
                continue
            report.platforms[platform] = "ok"
            results.append(outcome)
        return results

    def _evaluate_platform(
        self,
        reference: FlakeReference,
        platform: str,
        full: bool,
        cancel: threading.Event | None,
    ) -> PlatformResult:
        result = PlatformResult(platform=platform, full=full)
        for raw in self.evaluator.evaluate(reference, platform, full=full, cancel=cancel):
            entity = normalize(raw)
            if isinstance(entity, PackageEntity):
                result.packages.append(entity)
            elif isinstance(entity, AppEntity):
                result.apps.append(entity)
            elif isinstance(entity, OptionEntity):
                result.options.append(entity)
            elif isinstance(entity, Skip):
                self.logger.warning(
                    "Skipping %s on %s: %s", ".".join(entity.attribute_path), platform, entity.reason
                )
                result.skipped.append(entity)
        self.logger.debug(
            "Platform %s produced %d package(s), %d app(s), %d option(s), %d skip(s)",
            platform,
            len(result.packages),
            len(result.apps),
            len(result.options),
            len(result.skipped),
        )
        return result

    def _publish(self, reference: FlakeReference, aggregate: Aggregate, report: RunReport) -> None:
        publisher = self.publisher
        assert publisher is not None
        entities = [*aggregate.packages, *aggregate.apps, *aggregate.options]
        try:
            floor = publisher.highest_generation(reference)
            generation = self.generations.next(reference.source, floor=floor)
            report.generation = generation
            report.publish_result = publisher.publish(
                reference, entities, generation, metadata=report.metadata
            )
        except (PublishError, RetryExhausted) as exc:
            self.logger.error("Publishing %s failed: %s", reference, exc)
            report.publish_outcome = PublishOutcome.FAILED
            report.error = str(exc)
            return
        if report.publish_result.superseded:
            report.warnings.append(
                f"generation {generation.token} superseded by a newer generation and discarded"
            )
            report.publish_outcome = PublishOutcome.SKIPPED
            return
        report.publish_outcome = PublishOutcome.PUBLISHED


def _cancelled(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


__all__ = [
    "FlakeExtraction",
    "Orchestrator",
    "PublishOutcome",
    "RunReport",
    "RunState",
]

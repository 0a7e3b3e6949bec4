"""Generation-based publication of index documents."""

from __future__ import annotations

import hashlib
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..errors import BackendError, PublishError, RetryExhausted, TransportError
from ..logging import get_logger
from ..models import (
    AppEntity,
    Entity,
    FlakeMetadata,
    FlakeReference,
    IndexDocument,
    IndexGeneration,
)
from ..retry import RetryPolicy, call_with_retry
from .backend import SearchBackend

ALL_PLATFORMS = "all"

_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_GENERATION_SUFFIX = re.compile(r"-g(\d+)$")

# Alias lookups and swaps for one alias run one at a time within a process.
_ALIAS_LOCKS: Dict[str, threading.Lock] = {}
_ALIAS_LOCKS_GUARD = threading.Lock()


def document_id(source: str, attribute_path: Sequence[str], platform: str) -> str:
    """Deterministic identifier for (flake source, attribute path, platform)."""
    digest = hashlib.sha256()
    for part in (source, ".".join(attribute_path), platform):
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


def build_documents(
    reference: FlakeReference,
    entities: Iterable[Entity],
    *,
    metadata: FlakeMetadata | None = None,
) -> List[IndexDocument]:
    """Wrap entities (and optionally the flake metadata) as index documents.

    Apps are per platform; packages and options are already merged across
    platforms and share one document.
    """
    documents: List[IndexDocument] = []
    if metadata is not None:
        documents.append(
            IndexDocument(
                id=document_id(reference.source, ("flake",), ALL_PLATFORMS),
                kind="flake",
                entity=metadata,
            )
        )
    for entity in entities:
        platform = entity.platform if isinstance(entity, AppEntity) else ALL_PLATFORMS
        documents.append(
            IndexDocument(
                id=document_id(reference.source, entity.attribute_path, platform),
                kind=entity.kind,
                entity=entity,
            )
        )
    return documents


class GenerationCounter:
    """Hands out monotonically increasing generations per flake source."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Dict[str, int] = {}

    def next(self, source: str, *, floor: Optional[int] = None) -> IndexGeneration:
        """Allocate the next generation, never at or below ``floor``."""
        with self._lock:
            number = max(self._last.get(source, 0), floor or 0) + 1
            self._last[source] = number
            return IndexGeneration(source=source, number=number)


@dataclass
class PublishResult:
    """Outcome of one successful publication."""

    alias: str
    index: str
    generation: IndexGeneration
    documents: int
    batches: int
    previous: List[str] = field(default_factory=list)
    swapped: bool = True
    deleted: List[str] = field(default_factory=list)
    superseded: bool = False


class Publisher:
    """Writes one generation into a fresh index and swaps the alias to it.

    The alias only moves after every batch was written, so readers either see
    the previous generation or the new one in full.
    """

    def __init__(
        self,
        backend: SearchBackend,
        *,
        index_prefix: str = "flake-info",
        schema_version: int = 1,
        batch_size: int = 500,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.index_prefix = index_prefix
        self.schema_version = schema_version
        self.batch_size = max(1, batch_size)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.logger = get_logger("index.publisher")

    def alias_for(self, reference: FlakeReference) -> str:
        slug = _SLUG_CHARS.sub("-", reference.source.lower()).strip("-") or "flake"
        return f"{self.index_prefix}-{self.schema_version}-{slug}"

    def index_name(self, reference: FlakeReference, generation: IndexGeneration) -> str:
        return f"{self.alias_for(reference)}-{generation.token}"

    def current_generation(self, reference: FlakeReference) -> Optional[int]:
        """Generation number the alias points to, if any."""
        indices = self._retry(
            lambda: self.backend.get_alias(self.alias_for(reference)),
            f"alias lookup for {reference.source}",
        )
        return _highest_generation(indices)

    def highest_generation(self, reference: FlakeReference) -> Optional[int]:
        """Highest generation that exists for the source, live or not.

        Generations whose alias swap failed still own their index, so new
        generations must be allocated above them too.
        """
        alias = self.alias_for(reference)
        indices = self._retry(
            lambda: self.backend.list_indices(f"{alias}-g"),
            f"index listing for {reference.source}",
        )
        numbers = [_highest_generation(indices), self.current_generation(reference)]
        return max((number for number in numbers if number is not None), default=None)

    def publish(
        self,
        reference: FlakeReference,
        entities: Iterable[Entity],
        generation: IndexGeneration,
        *,
        metadata: FlakeMetadata | None = None,
    ) -> PublishResult:
        """Write ``entities`` as ``generation`` and make it the live index.

        Raises :class:`PublishError` when writing fails after retries; the
        partially written index is removed and the alias is left untouched.
        """
        documents = build_documents(reference, entities, metadata=metadata)
        alias = self.alias_for(reference)
        index = self.index_name(reference, generation)
        self.logger.info(
            "Publishing %d document(s) for %s as %s", len(documents), reference.source, index
        )

        try:
            self._retry(lambda: self.backend.create_index(index), f"create index {index}")
        except RetryExhausted as exc:
            # A first-attempt rejection means the index is not ours to remove.
            if exc.attempts > 1 or _retryable(exc.__cause__):
                self._discard(index)
            raise PublishError(
                f"Unable to create index {index}: {exc}", generation=generation
            ) from exc

        batches = 0
        try:
            for batch in _chunks(documents, self.batch_size):
                self._retry(
                    lambda batch=batch: self.backend.bulk_write(index, batch),
                    f"bulk write to {index}",
                )
                batches += 1
        except RetryExhausted as exc:
            self._discard(index)
            raise PublishError(
                f"Bulk write for generation {generation.token} of {reference.source} failed: {exc}",
                generation=generation,
            ) from exc

        result = self._activate(reference, alias, index, generation)
        result.documents = len(documents)
        result.batches = batches
        return result

    def recover(self, reference: FlakeReference, generation: IndexGeneration) -> PublishResult:
        """Repeat the alias swap for a generation whose index is fully written."""
        alias = self.alias_for(reference)
        index = self.index_name(reference, generation)
        self.logger.info("Recovering alias %s for %s", alias, index)
        return self._activate(reference, alias, index, generation)

    # ------------------------------------------------------------------
    # Helpers

    def _activate(
        self,
        reference: FlakeReference,
        alias: str,
        index: str,
        generation: IndexGeneration,
    ) -> PublishResult:
        with _alias_lock(alias):
            return self._swap_to(reference, alias, index, generation)

    def _swap_to(
        self,
        reference: FlakeReference,
        alias: str,
        index: str,
        generation: IndexGeneration,
    ) -> PublishResult:
        try:
            previous = self._retry(lambda: self.backend.get_alias(alias), f"alias lookup {alias}")
            live = _highest_generation(previous)
            if live is not None and live > generation.number:
                self.logger.warning(
                    "Alias %s already serves newer generation g%06d; dropping %s",
                    alias,
                    live,
                    index,
                )
                self._discard(index)
                return PublishResult(
                    alias=alias,
                    index=index,
                    generation=generation,
                    documents=0,
                    batches=0,
                    previous=list(previous),
                    swapped=False,
                    deleted=[index],
                    superseded=True,
                )
            swapped = previous != [index]
            if swapped:
                self._retry(
                    lambda: self.backend.swap_alias(alias, add=index, remove=previous),
                    f"alias swap {alias} -> {index}",
                )
                self.logger.info("Alias %s now points to %s", alias, index)
            else:
                self.logger.debug("Alias %s already points to %s", alias, index)
        except RetryExhausted as exc:
            raise PublishError(
                f"Alias swap for {reference.source} to {index} failed: {exc}",
                generation=generation,
            ) from exc

        deleted: List[str] = []
        for stale in previous:
            if stale == index:
                continue
            try:
                self._retry(lambda stale=stale: self.backend.delete_index(stale), f"delete {stale}")
            except RetryExhausted as exc:
                self.logger.warning("Unable to delete previous index %s: %s", stale, exc)
                continue
            deleted.append(stale)

        return PublishResult(
            alias=alias,
            index=index,
            generation=generation,
            documents=0,
            batches=0,
            previous=[name for name in previous if name != index],
            swapped=swapped,
            deleted=deleted,
        )

    def _discard(self, index: str) -> None:
        try:
            self._retry(lambda: self.backend.delete_index(index), f"cleanup of {index}")
        except RetryExhausted as exc:
            self.logger.warning("Failed generation index %s could not be removed: %s", index, exc)

    def _retry(self, func, description: str):
        return call_with_retry(
            func,
            policy=self.policy,
            description=description,
            retry_on=(TransportError,),
            sleep=self._sleep,
            should_retry=_retryable,
        )


def _alias_lock(alias: str) -> threading.Lock:
    with _ALIAS_LOCKS_GUARD:
        return _ALIAS_LOCKS.setdefault(alias, threading.Lock())


def _retryable(error: Optional[BaseException]) -> bool:
    if isinstance(error, BackendError):
        return error.retryable
    return True


def _highest_generation(indices: Iterable[str]) -> Optional[int]:
    numbers = [
        int(match.group(1))
        for match in (_GENERATION_SUFFIX.search(index) for index in indices)
        if match
    ]
    return max(numbers) if numbers else None


def _chunks(documents: List[IndexDocument], size: int) -> Iterable[List[IndexDocument]]:
    for start in range(0, len(documents), size):
        yield documents[start : start + size]


__all__ = [
    "GenerationCounter",
    "PublishResult",
    "Publisher",
    "build_documents",
    "document_id",
]

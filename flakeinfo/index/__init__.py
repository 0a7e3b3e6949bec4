"""Search index publication."""

from .backend import HttpSearchBackend, SearchBackend
from .publisher import GenerationCounter, PublishResult, Publisher, build_documents, document_id

__all__ = [
    "GenerationCounter",
    "HttpSearchBackend",
    "PublishResult",
    "Publisher",
    "SearchBackend",
    "build_documents",
    "document_id",
]

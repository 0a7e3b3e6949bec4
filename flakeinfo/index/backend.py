"""Search backend client with index-alias semantics."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from ..config import BackendSettings
from ..errors import BackendError, TransportError
from ..models import IndexDocument

Transport = Callable[[str, str, Optional[bytes], Dict[str, str], float], Tuple[int, bytes]]

INDEX_SETTINGS: Dict[str, Any] = {
    "settings": {"number_of_shards": 1, "number_of_replicas": 0},
    "mappings": {
        "properties": {
            "type": {"type": "keyword"},
            "attribute_name": {"type": "keyword"},
            "attribute_path": {"type": "keyword"},
            "name": {"type": "keyword", "fields": {"text": {"type": "text"}}},
            "version": {"type": "keyword"},
            "description": {"type": "text"},
            "long_description": {"type": "text"},
            "licenses": {"type": "keyword"},
            "supported_platforms": {"type": "keyword"},
            "platform": {"type": "keyword"},
            "broken": {"type": "boolean"},
            "program": {"type": "keyword"},
            "type_description": {"type": "text"},
            "default": {"type": "text", "index": False},
            "example": {"type": "text", "index": False},
        }
    },
}


class SearchBackend(ABC):
    """Contract for the document store the publisher writes to."""

    @abstractmethod
    def create_index(self, name: str) -> None:
        """Create an empty index; fails if it already exists."""

    @abstractmethod
    def bulk_write(self, index: str, documents: Sequence[IndexDocument]) -> None:
        """Write all documents or raise; partial success counts as failure."""

    @abstractmethod
    def get_alias(self, alias: str) -> List[str]:
        """Indices the alias currently points to (empty when unset)."""

    @abstractmethod
    def list_indices(self, prefix: str) -> List[str]:
        """Names of existing indices starting with ``prefix``."""

    @abstractmethod
    def swap_alias(self, alias: str, *, add: str, remove: Sequence[str]) -> None:
        """Atomically point ``alias`` at ``add`` and away from ``remove``."""

    @abstractmethod
    def delete_index(self, name: str) -> None:
        """Delete an index; deleting a missing index is not an error."""


class HttpSearchBackend(SearchBackend):
    """Elasticsearch-compatible HTTP implementation of :class:`SearchBackend`."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        timeout: float = 60.0,
        transport: Transport | None = None,
    ) -> None:
        self.base_url = settings.url.rstrip("/")
        self._token = settings.token
        self.timeout = timeout
        self._transport = transport or _urllib_transport

    def create_index(self, name: str) -> None:
        self._request("PUT", f"/{quote(name)}", INDEX_SETTINGS)

    def bulk_write(self, index: str, documents: Sequence[IndexDocument]) -> None:
        if not documents:
            return
        lines: List[str] = []
        for document in documents:
            lines.append(json.dumps({"index": {"_index": index, "_id": document.id}}))
            lines.append(json.dumps(document.to_source(), sort_keys=True))
        body = ("\n".join(lines) + "\n").encode("utf-8")
        payload = self._request(
            "POST", "/_bulk", body, content_type="application/x-ndjson"
        )
        if payload.get("errors"):
            failures = _bulk_failures(payload)
            raise BackendError(
                f"Bulk write to {index} rejected {len(failures)} document(s): {'; '.join(failures[:3])}",
                status=_bulk_status(payload),
            )

    def get_alias(self, alias: str) -> List[str]:
        status, raw = self._send("GET", f"/_alias/{quote(alias)}", None)
        if status == 404:
            return []
        payload = self._decode(status, raw, "GET", alias)
        return sorted(key for key in payload if isinstance(key, str))

    def list_indices(self, prefix: str) -> List[str]:
        status, raw = self._send("GET", f"/{quote(prefix)}*/_settings", None)
        if status == 404:
            return []
        payload = self._decode(status, raw, "GET", f"{prefix}*")
        return sorted(key for key in payload if isinstance(key, str) and key.startswith(prefix))

    def swap_alias(self, alias: str, *, add: str, remove: Sequence[str]) -> None:
        actions: List[Dict[str, Any]] = [
            {"remove": {"index": index, "alias": alias}} for index in remove if index != add
        ]
        actions.append({"add": {"index": add, "alias": alias}})
        self._request("POST", "/_aliases", {"actions": actions})

    def delete_index(self, name: str) -> None:
        status, raw = self._send("DELETE", f"/{quote(name)}", None)
        if status == 404:
            return
        self._decode(status, raw, "DELETE", name)

    # ------------------------------------------------------------------
    # Helpers

    def _request(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | bytes | None,
        *,
        content_type: str = "application/json",
    ) -> Dict[str, Any]:
        status, raw = self._send(method, path, body, content_type=content_type)
        return self._decode(status, raw, method, path)

    def _send(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | bytes | None,
        *,
        content_type: str = "application/json",
    ) -> Tuple[int, bytes]:
        data: Optional[bytes]
        if body is None or isinstance(body, bytes):
            data = body
        else:
            data = json.dumps(body).encode("utf-8")
        headers = {
            "Content-Type": content_type,
            "Accept": "application/json",
            "Authorization": f"Bearer {self._token}",
        }
        return self._transport(method, f"{self.base_url}{path}", data, headers, self.timeout)

    @staticmethod
    def _decode(status: int, raw: bytes, method: str, target: str) -> Dict[str, Any]:
        text = raw.decode("utf-8", errors="replace") if raw else ""
        if status >= 300:
            raise BackendError(
                f"Backend returned {status} for {method} {target}: {text.strip()[:300]}",
                status=status,
            )
        if not text.strip():
            return {}
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackendError(f"Backend returned invalid JSON for {method} {target}") from exc
        return payload if isinstance(payload, dict) else {}


def _bulk_status(payload: Mapping[str, Any]) -> Optional[int]:
    """Status that classifies a partly rejected bulk request.

    Throttled or server-side item failures keep the request retryable.
    """
    statuses = [
        result.get("status")
        for item in payload.get("items") or []
        if isinstance(item, dict)
        for result in item.values()
        if isinstance(result, dict) and result.get("error")
    ]
    statuses = [status for status in statuses if isinstance(status, int)]
    if not statuses:
        return None
    if 429 in statuses:
        return 429
    return max(statuses)


def _bulk_failures(payload: Mapping[str, Any]) -> List[str]:
    failures: List[str] = []
    items = payload.get("items")
    if not isinstance(items, list):
        return ["unknown bulk failure"]
    for item in items:
        if not isinstance(item, dict):
            continue
        for result in item.values():
            if isinstance(result, dict) and result.get("error"):
                error = result["error"]
                reason = error.get("reason") if isinstance(error, dict) else error
                failures.append(f"{result.get('_id')}: {reason}")
    return failures or ["unknown bulk failure"]


def _urllib_transport(
    method: str, url: str, data: Optional[bytes], headers: Dict[str, str], timeout: float
) -> Tuple[int, bytes]:
    request = Request(url, data=data, headers=headers, method=method)
    try:
        with urlopen(request, timeout=timeout) as response:  # type: ignore[arg-type]
            return response.status, response.read()
    except HTTPError as exc:
        return exc.code, exc.read() if hasattr(exc, "read") else b""
    except URLError as exc:
        raise TransportError(f"Backend request {method} {url} failed: {exc.reason}") from exc
    except TimeoutError as exc:
        raise TransportError(f"Backend request {method} {url} timed out") from exc


__all__ = ["HttpSearchBackend", "INDEX_SETTINGS", "SearchBackend", "Transport"]

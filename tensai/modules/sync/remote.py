"""
CouchDB-compatible remote replica over HTTP.

Implements the replication peer operations with the CouchDB replication
protocol endpoints:

    GET  /{db}                         database info
    GET  /{db}/_changes                change feed (longpoll, all leaf revs)
    POST /{db}/_revs_diff              missing revisions
    GET  /{db}/{doc}?open_revs=[...]   revisions with history
    POST /{db}/_bulk_docs              new_edits=false writes
    GET/PUT /{db}/_local/{id}          checkpoints
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from tensai.core.config import settings
from tensai.core.database import (
    DESIGN_PREFIX,
    LOCAL_PREFIX,
    BulkResult,
    Change,
    ChangesResult,
    DatabaseInfo,
)
from tensai.shared.errors import ReplicationDeniedError, ReplicationError, safe
from tensai.shared.logging import get_logger

from .replication import parse_seq

logger = get_logger(__name__)

_DENIED_ERRORS = frozenset({"forbidden", "unauthorized"})


def _strip_credentials(url: str) -> str:
    parts = urlsplit(url)
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _doc_path(doc_id: str) -> str:
    for prefix in (DESIGN_PREFIX, LOCAL_PREFIX):
        if doc_id.startswith(prefix):
            return prefix + quote(doc_id[len(prefix) :], safe="")
    return quote(doc_id, safe="")


class RemoteDatabase:
    """Async client for a database on a CouchDB-compatible server.

    Example:
        remote = RemoteDatabase("https://couch.example.com/cards", username="me", password="...")
        info = await remote.info()
        await remote.close()
    """

    def __init__(
        self,
        url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: Database URL; credentials embedded in it are used for auth.
            username: Basic auth user name.
            password: Basic auth password.
            timeout: Per-request timeout in seconds.
            transport: Custom transport (tests use ``httpx.MockTransport``).
        """
        parts = urlsplit(url.strip())
        self.url = _strip_credentials(url.strip()).rstrip("/")
        self.name = self.url
        username = username or parts.username
        password = password if password is not None else parts.password
        self._auth = httpx.BasicAuth(username, password or "") if username else None
        self.timeout = settings.sync.request_timeout if timeout is None else timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def __repr__(self) -> str:
        return f"RemoteDatabase(url={self.url!r})"

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url + "/",
                auth=self._auth,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.client.request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()

    # ---------- Replication peer ----------

    @safe
    async def info(self) -> DatabaseInfo:
        data = await self._request("GET", "")
        return DatabaseInfo(
            name=data.get("db_name", self.url),
            update_seq=parse_seq(data.get("update_seq")),
            doc_count=data.get("doc_count", 0),
        )

    @safe
    async def changes(
        self,
        since: Any = 0,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> ChangesResult:
        params: dict[str, Any] = {"style": "all_docs", "include_docs": "true", "since": since}
        if limit is not None:
            params["limit"] = limit
        request_timeout = self.timeout
        if timeout:
            params["feed"] = "longpoll"
            params["timeout"] = int(timeout * 1000)
            request_timeout += timeout

        data = await self._request("GET", "_changes", params=params, timeout=request_timeout)
        results = []
        for row in data.get("results", []):
            revs = [change["rev"] for change in row.get("changes", [])]
            doc = row.get("doc") or {"_id": row["id"], "_rev": revs[0] if revs else ""}
            results.append(
                Change(
                    id=row["id"],
                    seq=row["seq"],
                    rev=doc.get("_rev", revs[0] if revs else ""),
                    deleted=bool(row.get("deleted")),
                    doc=doc,
                    leaf_revs=revs,
                )
            )
        return ChangesResult(results=results, last_seq=data.get("last_seq", since))

    @safe
    async def revs_diff(self, revs: dict[str, list[str]]) -> dict[str, list[str]]:
        data = await self._request("POST", "_revs_diff", json=revs)
        return {doc_id: entry["missing"] for doc_id, entry in data.items() if entry.get("missing")}

    @safe
    async def get_revisions(self, doc_id: str, revs: Sequence[str]) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            _doc_path(doc_id),
            params={"open_revs": json.dumps(list(revs)), "revs": "true", "latest": "true"},
        )
        return [entry["ok"] for entry in data if "ok" in entry]

    @safe
    async def bulk_insert_revisions(self, docs: Sequence[dict[str, Any]]) -> list[BulkResult]:
        data = await self._request("POST", "_bulk_docs", json={"docs": list(docs), "new_edits": False})
        errors: dict[str, BulkResult] = {}
        for entry in data or []:
            if "error" not in entry:
                continue
            error_cls = ReplicationDeniedError if entry["error"] in _DENIED_ERRORS else ReplicationError
            errors[entry["id"]] = BulkResult(
                id=entry["id"],
                rev=entry.get("rev"),
                error=error_cls(
                    entry.get("reason") or entry["error"],
                    details={"doc_id": entry["id"], "reason": entry["error"]},
                ),
            )
        return [errors.get(doc["_id"]) or BulkResult(id=doc["_id"], rev=doc["_rev"]) for doc in docs]

    @safe
    async def get_local(self, doc_id: str) -> dict[str, Any] | None:
        response = await self.client.get(_doc_path(self._local_id(doc_id)))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    @safe
    async def put_local(self, doc_id: str, body: dict[str, Any]) -> str:
        doc_id = self._local_id(doc_id)
        current = await self.get_local(doc_id)
        doc = {**body, "_id": doc_id}
        if current is not None and "_rev" in current:
            doc["_rev"] = current["_rev"]
        data = await self._request("PUT", _doc_path(doc_id), json=doc)
        return data.get("rev", "")

    @staticmethod
    def _local_id(doc_id: str) -> str:
        return doc_id if doc_id.startswith(LOCAL_PREFIX) else LOCAL_PREFIX + doc_id

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RemoteDatabase:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

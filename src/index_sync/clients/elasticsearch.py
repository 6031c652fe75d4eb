"""Async Elasticsearch REST client built on httpx."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from index_sync.config import Settings
from index_sync.errors import ConnectivityError, SearchEngineError
from index_sync.indexing.types import IndexDocument
from index_sync.utils.metrics import track_bulk

logger = logging.getLogger(__name__)

# Status reported for 2xx responses whose body is not the expected JSON;
# treated like a bad gateway, so writes are retried
MALFORMED_RESPONSE_STATUS = 502


def _malformed(response: httpx.Response, error: Exception) -> SearchEngineError:
    request = response.request
    return SearchEngineError(
        f"{request.method} {request.url.path} returned a malformed body: {error!r}",
        status_code=MALFORMED_RESPONSE_STATUS,
        body=response.text,
    )


class IndexRecord(BaseModel):
    """Metadata about one index, as reported by the search engine.

    Attributes:
        name: Index name.
        created_at: Creation time from the index settings (UTC).
        docs_count: Number of documents, when reported.
    """

    name: str
    created_at: datetime | None = None
    docs_count: int | None = Field(default=None)


class ElasticsearchClient:
    """Thin async client for the Elasticsearch endpoints the service needs.

    One ``httpx.AsyncClient`` (and therefore one connection pool) is shared by
    the index writer and the retention sweeper; it is safe for concurrent use.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:9200",
        timeout: float = 30.0,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Elasticsearch base URL.
            timeout: Request timeout in seconds.
            username: Optional basic auth user.
            password: Optional basic auth password.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = httpx.BasicAuth(username, password or "") if username else None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ElasticsearchClient":
        return cls(
            base_url=settings.elasticsearch_url,
            timeout=settings.elasticsearch_timeout,
            username=settings.elasticsearch_username,
            password=settings.elasticsearch_password,
        )

    async def connect(self) -> None:
        """Create the HTTP client and verify the cluster answers.

        Raises:
            ConnectivityError: If the cluster cannot be reached.
        """
        if self._client is None:
            logger.info(f"Connecting to Elasticsearch at {self.base_url}")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=self._auth,
                transport=self._transport,
            )

        info = self._json(await self._request("GET", "/"), dict)
        version = info.get("version", {}).get("number", "unknown")
        logger.info(f"Connected to Elasticsearch {version}")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            logger.info("Closing Elasticsearch client")
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if the cluster is reachable.

        Returns:
            True if Elasticsearch answered, False otherwise.
        """
        if self._client is None:
            return False
        try:
            await self._request("GET", "/")
            return True
        except (ConnectivityError, SearchEngineError) as e:
            logger.error(f"Elasticsearch health check failed: {e}")
            return False

    @track_bulk()
    async def bulk(self, documents: list[IndexDocument]) -> list[dict[str, Any]]:
        """Index documents in one ``_bulk`` request.

        Each document is sent as an ``index`` action with its own id, so a
        repeated write of the same document replaces it.

        Args:
            documents: Documents to write.

        Returns:
            One result dict per document, in request order (the inner object
            of each bulk response item: ``_index``, ``_id``, ``status``,
            optionally ``error``).

        Raises:
            ConnectivityError: If the cluster cannot be reached.
            SearchEngineError: If the whole request is rejected.
        """
        if not documents:
            return []

        lines: list[str] = []
        for doc in documents:
            lines.append(json.dumps({"index": {"_index": doc.index, "_id": doc.id}}))
            lines.append(json.dumps(doc.body, default=str))
        content = "\n".join(lines) + "\n"

        response = await self._request(
            "POST",
            "/_bulk",
            content=content.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        items = self._json(response, dict).get("items", [])
        if len(items) != len(documents):
            raise SearchEngineError(
                f"bulk response has {len(items)} items for {len(documents)} documents",
                status_code=response.status_code,
            )
        try:
            return [dict(next(iter(item.values()))) for item in items]
        except (AttributeError, StopIteration, TypeError, ValueError) as e:
            raise _malformed(response, e) from e

    async def list_indices(self, patterns: list[str]) -> list[IndexRecord]:
        """List indices matching the given patterns.

        Args:
            patterns: Index names or wildcard patterns (e.g. ``logs-*``).

        Returns:
            Index records with creation time and document count.
        """
        target = ",".join(patterns) if patterns else "*"
        response = await self._request(
            "GET",
            f"/_cat/indices/{target}",
            params={"format": "json", "h": "i,cd,dc"},
            allow_not_found=True,
        )
        if response.status_code == 404:
            return []

        records: list[IndexRecord] = []
        try:
            for row in self._json(response, list):
                created_at = None
                # _cat returns creation.date as a string of epoch milliseconds
                if row.get("cd"):
                    created_at = datetime.fromtimestamp(int(row["cd"]) / 1000, tz=UTC)
                docs_count = int(row["dc"]) if row.get("dc") not in (None, "") else None
                records.append(
                    IndexRecord(name=row["i"], created_at=created_at, docs_count=docs_count)
                )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise _malformed(response, e) from e

        logger.debug(f"Listed {len(records)} indices for patterns {patterns}")
        return records

    async def delete_index(self, name: str) -> bool:
        """Delete an index.

        Args:
            name: Index name.

        Returns:
            True if the index was deleted, False if it did not exist.
        """
        response = await self._request("DELETE", f"/{name}", allow_not_found=True)
        if response.status_code == 404:
            logger.info(f"Index {name} already absent")
            return False
        logger.info(f"Deleted index {name}")
        return True

    async def create_snapshot(self, repository: str, snapshot: str, index: str) -> None:
        """Start a snapshot of one index, named after the index."""
        logger.info(f"Taking snapshot for {index}, repository: {repository}")
        await self._request(
            "PUT",
            f"/_snapshot/{repository}/{snapshot}",
            json={
                "indices": index,
                "ignore_unavailable": True,
                "include_global_state": False,
                "metadata": {
                    "taken_by": "index-sync",
                    "taken_because": "retention sweep",
                },
            },
        )

    async def snapshot_state(self, repository: str, snapshot: str) -> str | None:
        """Return the state of a snapshot (SUCCESS, IN_PROGRESS, FAILED, ...)."""
        response = await self._request(
            "GET", f"/_snapshot/{repository}/{snapshot}/_status", allow_not_found=True
        )
        if response.status_code == 404:
            return None
        for entry in self._json(response, dict).get("snapshots", []):
            if isinstance(entry, dict) and entry.get("snapshot") == snapshot:
                return entry.get("state")
        return None

    async def snapshot_running(self) -> bool:
        """Whether any snapshot is currently running in the cluster."""
        response = await self._request("GET", "/_snapshot/_status")
        return bool(self._json(response, dict).get("snapshots"))

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the underlying httpx client.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            raise RuntimeError("Elasticsearch client not connected. Call connect() first.")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError) as e:
            raise ConnectivityError(f"Elasticsearch unreachable at {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            # Read/write/pool timeouts: the request may or may not have landed
            raise SearchEngineError(f"{method} {path} timed out: {e}", status_code=408) from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return response
        if response.status_code >= 400:
            raise SearchEngineError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, expected: type) -> Any:
        """Decode a JSON body of the expected top-level type.

        Raises:
            SearchEngineError: If the body is not JSON or has the wrong shape.
        """
        try:
            data = response.json()
        except ValueError as e:
            raise _malformed(response, e) from e
        if not isinstance(data, expected):
            raise _malformed(response, TypeError(f"expected {expected.__name__}"))
        return data

    async def __aenter__(self) -> "ElasticsearchClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

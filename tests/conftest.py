"""Pytest configuration and shared fixtures.

Provides an in-memory broker implementing the partition source protocol and
an Elasticsearch fake served through ``httpx.MockTransport``.
"""

import asyncio
import fnmatch
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from index_sync.clients.elasticsearch import ElasticsearchClient
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.indexing.dead_letter import DeadLetterSink
from index_sync.indexing.types import Batch, Message, PartitionId, WriteOutcome

# 2026-10-18T12:00:00Z
NOW_MS = 1792324800000


def make_message(
    offset: int,
    payload: Any = None,
    topic: str = "events",
    partition: int = 0,
    timestamp: int = NOW_MS,
    raw: bytes | None = None,
) -> Message:
    """Build a broker message with a JSON payload (or raw bytes)."""
    if raw is None:
        body = payload if payload is not None else {"seq": offset, "msg": f"event {offset}"}
        raw = json.dumps(body).encode("utf-8")
    return Message(topic=topic, partition=partition, offset=offset, value=raw, timestamp=timestamp)


class FakeBroker:
    """In-memory partitioned log with consumer-group style commits."""

    def __init__(self) -> None:
        self.logs: dict[PartitionId, list[Message]] = {}
        self.positions: dict[PartitionId, int] = {}
        self.committed: dict[PartitionId, int] = {}
        self.commits: dict[PartitionId, list[int]] = {}
        self.listener: Any = None
        self.assigned: list[PartitionId] = []

    def produce(self, partition: PartitionId, messages: list[Message]) -> None:
        self.logs.setdefault(partition, []).extend(messages)

    def produce_json(self, partition: PartitionId, count: int, start: int = 0) -> None:
        self.produce(
            partition,
            [
                make_message(offset, topic=partition.topic, partition=partition.partition)
                for offset in range(start, start + count)
            ],
        )

    async def start(self, listener: Any) -> None:
        self.listener = listener
        self.assigned = sorted(self.logs)
        await listener.on_partitions_assigned(self.assigned)

    async def revoke(self, partitions: list[PartitionId]) -> None:
        await self.listener.on_partitions_revoked(partitions)
        self.assigned = [p for p in self.assigned if p not in partitions]

    async def reassign(self, partitions: list[PartitionId]) -> None:
        """Assign partitions again, resuming from the last committed offset."""
        for partition in partitions:
            self.positions[partition] = self.committed.get(partition, 0)
        self.assigned = sorted({*self.assigned, *partitions})
        await self.listener.on_partitions_assigned(partitions)

    async def poll(
        self, partition: PartitionId, timeout_ms: int, max_records: int
    ) -> list[Message]:
        log = self.logs.get(partition, [])
        position = self.positions.get(partition, self.committed.get(partition, 0))
        pending = [m for m in log if m.offset >= position][:max_records]
        if not pending:
            await asyncio.sleep(min(timeout_ms / 1000, 0.005))
            return []
        self.positions[partition] = pending[-1].offset + 1
        await asyncio.sleep(0)
        return pending

    async def commit(self, partition: PartitionId, offset: int) -> None:
        self.committed[partition] = offset
        self.commits.setdefault(partition, []).append(offset)

    def caught_up(self) -> bool:
        return all(
            self.committed.get(p, 0) >= (log[-1].offset + 1 if log else 0)
            for p, log in self.logs.items()
        )


class GatedWriter:
    """Writer whose batches complete only when the test opens their gate."""

    def __init__(self) -> None:
        self.dead_letters = DeadLetterSink()
        self.batches: list[Batch] = []
        self.gates: dict[int, asyncio.Event] = {}
        self.opened = False

    async def write(self, batch: Batch) -> list[WriteOutcome]:
        gate = asyncio.Event()
        if self.opened:
            gate.set()
        self.gates[batch.first_offset] = gate
        self.batches.append(batch)
        await gate.wait()
        return []

    def release(self, first_offset: int) -> None:
        self.gates[first_offset].set()

    def release_all(self) -> None:
        self.opened = True
        for gate in self.gates.values():
            gate.set()


ItemHook = Callable[[str, str, dict[str, Any]], tuple[int, dict[str, Any] | None] | None]


class FakeElasticsearch:
    """Stateful stand-in for the Elasticsearch REST endpoints the service uses."""

    def __init__(self) -> None:
        self.indices: dict[str, dict[str, dict[str, Any]]] = {}
        self.created: dict[str, datetime] = {}
        self.requests: list[httpx.Request] = []
        self.bulk_calls: list[list[tuple[str, str]]] = []
        self.deleted: list[str] = []
        self.delete_failures: dict[str, int] = {}
        self.snapshots: dict[str, list[str]] = {}
        self.snapshot_states: list[str] = ["SUCCESS"]
        self.running_snapshots: list[bool] = []
        self.item_hook: ItemHook | None = None
        self.bulk_status: int | None = None
        self.unreachable = 0
        self.malformed_bulk = 0
        self.cat_body: str | None = None
        self.on_bulk: Callable[[], Any] | None = None

    def add_index(self, name: str, created: datetime | None = None) -> None:
        self.indices.setdefault(name, {})
        self.created[name] = created or datetime.now(UTC)

    @property
    def document_count(self) -> int:
        return sum(len(docs) for docs in self.indices.values())

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if self.unreachable:
            self.unreachable -= 1
            raise httpx.ConnectError("connection refused", request=request)

        if method == "GET" and path == "/":
            return httpx.Response(200, json={"version": {"number": "8.15.0"}})
        if method == "POST" and path == "/_bulk":
            return self._bulk(request)
        if method == "GET" and path.startswith("/_cat/indices/"):
            return self._cat(path.removeprefix("/_cat/indices/"))
        if path == "/_snapshot/_status":
            running = self.running_snapshots.pop(0) if self.running_snapshots else False
            snapshots = [{"state": "STARTED"}] if running else []
            return httpx.Response(200, json={"snapshots": snapshots})
        if path.startswith("/_snapshot/"):
            return self._snapshot(method, path.removeprefix("/_snapshot/").split("/"))
        if method == "DELETE":
            return self._delete(path.lstrip("/"))
        return httpx.Response(400, json={"error": f"unexpected {method} {path}"})

    def _bulk(self, request: httpx.Request) -> httpx.Response:
        if self.on_bulk is not None:
            self.on_bulk()
        if self.bulk_status is not None:
            return httpx.Response(self.bulk_status, json={"error": "rejected"})
        if self.malformed_bulk:
            self.malformed_bulk -= 1
            return httpx.Response(200, text="<html>bad gateway</html>")

        lines = [json.loads(line) for line in request.content.decode().splitlines() if line]
        items = []
        call: list[tuple[str, str]] = []
        for action, body in zip(lines[::2], lines[1::2], strict=True):
            meta = action["index"]
            index, doc_id = meta["_index"], meta["_id"]
            call.append((index, doc_id))
            status, error = 201, None
            if self.item_hook is not None:
                override = self.item_hook(index, doc_id, body)
                if override is not None:
                    status, error = override
            item: dict[str, Any] = {"_index": index, "_id": doc_id, "status": status}
            if error is not None:
                item["error"] = error
            else:
                if index not in self.indices:
                    self.add_index(index)
                self.indices[index][doc_id] = body
            items.append({"index": item})
        self.bulk_calls.append(call)
        return httpx.Response(200, json={"errors": False, "items": items})

    def _cat(self, target: str) -> httpx.Response:
        if self.cat_body is not None:
            return httpx.Response(200, text=self.cat_body)
        patterns = target.split(",")
        rows = [
            {
                "i": name,
                "cd": str(int(self.created[name].timestamp() * 1000)),
                "dc": str(len(docs)),
            }
            for name, docs in sorted(self.indices.items())
            if any(fnmatch.fnmatch(name, p) for p in patterns)
        ]
        return httpx.Response(200, json=rows)

    def _delete(self, name: str) -> httpx.Response:
        if self.delete_failures.get(name):
            self.delete_failures[name] -= 1
            return httpx.Response(500, json={"error": "delete failed"})
        if name not in self.indices:
            return httpx.Response(404, json={"error": "index_not_found_exception"})
        del self.indices[name]
        self.deleted.append(name)
        return httpx.Response(200, json={"acknowledged": True})

    def _snapshot(self, method: str, parts: list[str]) -> httpx.Response:
        repository, snapshot = parts[0], parts[1]
        if method == "PUT":
            self.snapshots.setdefault(repository, []).append(snapshot)
            return httpx.Response(200, json={"accepted": True})
        states = self.snapshot_states
        state = states.pop(0) if len(states) > 1 else states[0]
        return httpx.Response(200, json={"snapshots": [{"snapshot": snapshot, "state": state}]})


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_es() -> FakeElasticsearch:
    return FakeElasticsearch()


@pytest.fixture
async def es_client(fake_es: FakeElasticsearch):
    """Connected Elasticsearch client backed by the fake cluster."""
    client = ElasticsearchClient(base_url="http://es.test:9200", transport=fake_es.transport())
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def leases() -> IndexLeaseTable:
    return IndexLeaseTable()


async def no_sleep(delay: float) -> None:
    """Backoff replacement that only yields to the event loop."""
    await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll a condition until it holds or the timeout expires."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)

"""Partitioned stream consumer driving messages into the index writer."""

import asyncio
import logging
from collections import deque
from typing import NamedTuple, Protocol

from pydantic import BaseModel, Field

from index_sync.errors import CommitError, MappingError, OffsetOrderError
from index_sync.indexing.batch import BatchAccumulator, BatchConfig
from index_sync.indexing.dead_letter import DeadLetterSink
from index_sync.indexing.mapper import DocumentMapper
from index_sync.indexing.types import Batch, Message, PartitionId, WriteOutcome
from index_sync.indexing.writer import IndexWriter
from index_sync.utils.logging import bind_context
from index_sync.utils.metrics import (
    record_batch,
    record_commit,
    record_consumed,
    set_in_flight,
)

logger = logging.getLogger(__name__)


class PartitionSource(Protocol):
    """Broker side of the consumer: per-partition polling and commits."""

    async def start(self, listener: "StreamConsumer") -> None: ...

    async def poll(
        self, partition: PartitionId, timeout_ms: int, max_records: int
    ) -> list[Message]: ...

    async def commit(self, partition: PartitionId, offset: int) -> None: ...


class StreamConsumerConfig(BaseModel):
    """Configuration for the stream consumer."""

    batch_config: BatchConfig = Field(default_factory=BatchConfig)
    poll_timeout_ms: int = Field(default=1000, description="Max wait of one partition poll")
    max_poll_records: int = Field(default=500, description="Max records per poll")
    max_in_flight_batches: int = Field(
        default=1, ge=1, description="Outstanding batches per partition before polling stops"
    )
    drain_timeout_s: float = Field(
        default=30.0, description="Max wait for a revoked partition to drain"
    )


class PartitionCursor:
    """Committed position of one partition.

    Owned by a single partition worker and persisted only through the broker's
    commit call. Commits must strictly increase.
    """

    def __init__(self, partition: PartitionId, source: PartitionSource) -> None:
        self.partition = partition
        self._source = source
        self.committed: int | None = None
        self.history: list[int] = []

    async def commit(self, offset: int) -> None:
        """Commit ``offset`` as the next offset to read.

        Raises:
            OffsetOrderError: If ``offset`` does not move the cursor forward.
            CommitError: If the broker rejected the commit.
        """
        if self.committed is not None and offset <= self.committed:
            raise OffsetOrderError(
                f"refusing to commit {self.partition}@{offset}: already at {self.committed}"
            )
        await self._source.commit(self.partition, offset)
        self.committed = offset
        self.history.append(offset)
        record_commit(self.partition.topic, self.partition.partition, offset)


class _InFlight(NamedTuple):
    batch: Batch
    task: "asyncio.Task[list[WriteOutcome]]"


class PartitionWorker:
    """Sequential pipeline for one partition.

    poll -> map -> accumulate -> write -> commit, in offset order. Up to
    ``max_in_flight_batches`` writes may be outstanding; commits are issued
    strictly in batch order, each only after all of its documents are final.
    Stopping is observed between polls: the partial batch is flushed, every
    outstanding write is awaited and committed, then the worker exits.
    """

    def __init__(
        self,
        partition: PartitionId,
        source: PartitionSource,
        mapper: DocumentMapper,
        writer: IndexWriter,
        dead_letters: DeadLetterSink,
        config: StreamConsumerConfig,
    ) -> None:
        self.partition = partition
        self.source = source
        self.mapper = mapper
        self.writer = writer
        self.dead_letters = dead_letters
        self.config = config
        self.cursor = PartitionCursor(partition, source)
        self.accumulator = BatchAccumulator(
            partition.topic, partition.partition, config=config.batch_config
        )
        self._in_flight: deque[_InFlight] = deque()
        self._stopping = asyncio.Event()

    def request_stop(self) -> None:
        self._stopping.set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(self) -> None:
        """Run until stopped, then drain and commit outstanding work."""
        bind_context(topic=self.partition.topic, partition=self.partition.partition)
        logger.info(f"Partition worker started for {self.partition}")
        try:
            while not self._stopping.is_set():
                await self._poll_once()
            await self._dispatch(self.accumulator.flush_now())
            while self._in_flight:
                await self._resolve_head()
            logger.info(
                f"Partition worker for {self.partition} drained "
                f"(committed offset {self.cursor.committed})"
            )
        except CommitError as e:
            # Partition moved to another member; it replays from the last commit
            logger.warning(f"Stopping worker for {self.partition}: {e}")
        finally:
            if self._in_flight:
                logger.warning(
                    f"Abandoned {len(self._in_flight)} uncommitted batches for {self.partition}"
                )
                for entry in self._in_flight:
                    entry.task.cancel()
                await asyncio.gather(*(e.task for e in self._in_flight), return_exceptions=True)
                self._in_flight.clear()
            set_in_flight(self.partition.topic, self.partition.partition, 0)

    async def _poll_once(self) -> None:
        timeout_ms = self.config.poll_timeout_ms
        remaining = self.accumulator.time_until_due()
        if remaining is not None:
            timeout_ms = max(0, min(timeout_ms, int(remaining * 1000)))

        messages = await self.source.poll(
            self.partition, timeout_ms=timeout_ms, max_records=self.config.max_poll_records
        )
        if messages:
            record_consumed(self.partition.topic, len(messages))

        for message in messages:
            await self._dispatch(await self._accept(message))

        if self.accumulator.due():
            await self._dispatch(self.accumulator.flush_now())

        # Commit whatever finished in the background, without waiting
        while self._in_flight and self._in_flight[0].task.done():
            await self._resolve_head()

    async def _accept(self, message: Message) -> Batch | None:
        try:
            document = self.mapper.map(message)
        except MappingError as e:
            await self.dead_letters.message_rejected(message, e.reason, str(e))
            return self.accumulator.skip(message.offset)
        return self.accumulator.add(message.offset, document)

    async def _dispatch(self, batch: Batch | None) -> None:
        if batch is None:
            return
        record_batch(len(batch))
        task = asyncio.create_task(
            self.writer.write(batch), name=f"write-{self.partition}-{batch.first_offset}"
        )
        self._in_flight.append(_InFlight(batch, task))
        set_in_flight(self.partition.topic, self.partition.partition, len(self._in_flight))

        # Backpressure: no further polling while the writer is saturated
        while len(self._in_flight) >= self.config.max_in_flight_batches:
            await self._resolve_head()

    async def _resolve_head(self) -> None:
        batch, task = self._in_flight[0]
        await task
        self._in_flight.popleft()
        await self.cursor.commit(batch.commit_offset)
        set_in_flight(self.partition.topic, self.partition.partition, len(self._in_flight))


class StreamConsumer:
    """Consumes assigned partitions with one worker task per partition.

    Workers run in parallel across partitions and sequentially within one.
    Partition assignment follows the broker's consumer group: new partitions
    get a worker, revoked partitions are drained and committed before the
    rebalance completes.
    """

    def __init__(
        self,
        source: PartitionSource,
        mapper: DocumentMapper,
        writer: IndexWriter,
        dead_letters: DeadLetterSink | None = None,
        config: StreamConsumerConfig | None = None,
    ) -> None:
        """Initialize the stream consumer.

        Args:
            source: Broker client (polling and commits).
            mapper: Message to document mapper.
            writer: Bulk index writer.
            dead_letters: Sink for unmappable messages.
            config: Consumer configuration.
        """
        self.source = source
        self.mapper = mapper
        self.writer = writer
        self.dead_letters = dead_letters or writer.dead_letters
        self.config = config or StreamConsumerConfig()
        self._workers: dict[PartitionId, tuple[PartitionWorker, asyncio.Task[None]]] = {}
        self._running = False
        self._failure: BaseException | None = None
        self._failed = asyncio.Event()

    async def start(self) -> None:
        """Join the consumer group; workers start as partitions get assigned."""
        if self._running:
            logger.warning("Stream consumer already running")
            return
        self._running = True
        await self.source.start(self)
        logger.info("Stream consumer started")

    async def stop(self) -> None:
        """Stop polling on every partition and wait for the workers to drain."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping stream consumer...")
        await self._stop_workers(list(self._workers), timeout=None)
        logger.info("Stream consumer stopped")

    async def abort(self) -> None:
        """Cancel every worker without waiting for in-flight writes.

        Cancelled workers commit nothing further; their uncommitted messages
        are redelivered after restart.
        """
        self._running = False
        tasks = [task for _, task in self._workers.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning(f"Aborted {len(tasks)} partition workers")
        self._workers.clear()

    async def on_partitions_assigned(self, partitions: list[PartitionId]) -> None:
        if not self._running:
            return
        for partition in partitions:
            if partition in self._workers:
                continue
            worker = PartitionWorker(
                partition=partition,
                source=self.source,
                mapper=self.mapper,
                writer=self.writer,
                dead_letters=self.dead_letters,
                config=self.config,
            )
            task = asyncio.create_task(worker.run(), name=f"partition-{partition}")
            task.add_done_callback(self._on_worker_done)
            self._workers[partition] = (worker, task)

    async def on_partitions_revoked(self, partitions: list[PartitionId]) -> None:
        await self._stop_workers(
            [p for p in partitions if p in self._workers], timeout=self.config.drain_timeout_s
        )

    async def wait_failed(self) -> BaseException:
        """Block until a partition worker fails fatally, then return its error."""
        await self._failed.wait()
        assert self._failure is not None
        return self._failure

    @property
    def assigned(self) -> list[PartitionId]:
        return sorted(self._workers)

    @property
    def committed_offsets(self) -> dict[PartitionId, int | None]:
        return {p: worker.cursor.committed for p, (worker, _) in self._workers.items()}

    async def _stop_workers(self, partitions: list[PartitionId], timeout: float | None) -> None:
        entries = [self._workers[p] for p in partitions]
        for worker, _ in entries:
            worker.request_stop()

        tasks = [task for _, task in entries]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning(f"Worker {task.get_name()} did not drain in time, cancelling")
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        for partition in partitions:
            self._workers.pop(partition, None)

    def _on_worker_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        level = logging.CRITICAL if isinstance(error, OffsetOrderError) else logging.ERROR
        logger.log(level, f"Worker {task.get_name()} failed: {error}", exc_info=error)
        if self._failure is None:
            self._failure = error
            self._failed.set()

"""Tests for the partitioned stream consumer."""

import asyncio

import pytest
from conftest import (
    FakeBroker,
    FakeElasticsearch,
    GatedWriter,
    make_message,
    no_sleep,
    wait_until,
)

from index_sync.clients.elasticsearch import ElasticsearchClient
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.errors import OffsetOrderError
from index_sync.indexing.batch import BatchConfig
from index_sync.indexing.consumer import PartitionCursor, StreamConsumer, StreamConsumerConfig
from index_sync.indexing.dead_letter import DeadLetterSink
from index_sync.indexing.mapper import DocumentMapper
from index_sync.indexing.types import PartitionId
from index_sync.indexing.writer import IndexWriter, WriterConfig

P0 = PartitionId("events", 0)


def consumer_config(
    max_size: int = 10, max_wait_ms: int = 50, max_in_flight: int = 1
) -> StreamConsumerConfig:
    return StreamConsumerConfig(
        batch_config=BatchConfig(max_size=max_size, max_wait_ms=max_wait_ms),
        poll_timeout_ms=20,
        max_poll_records=500,
        max_in_flight_batches=max_in_flight,
        drain_timeout_s=5.0,
    )


def build_consumer(
    broker: FakeBroker,
    es_client: ElasticsearchClient,
    leases: IndexLeaseTable,
    config: StreamConsumerConfig | None = None,
) -> StreamConsumer:
    dead_letters = DeadLetterSink()
    writer = IndexWriter(
        es_client, leases, dead_letters, WriterConfig(max_attempts=3), sleep=no_sleep
    )
    return StreamConsumer(
        broker, DocumentMapper(), writer, dead_letters, config or consumer_config()
    )


def assert_strictly_increasing(values: list[int]) -> None:
    assert all(a < b for a, b in zip(values, values[1:], strict=False)), values


class TestPartitionCursor:
    """Tests for PartitionCursor."""

    async def test_commits_must_increase(self, broker: FakeBroker) -> None:
        cursor = PartitionCursor(P0, broker)
        await cursor.commit(10)
        await cursor.commit(11)

        with pytest.raises(OffsetOrderError):
            await cursor.commit(11)
        with pytest.raises(OffsetOrderError):
            await cursor.commit(5)

        assert cursor.committed == 11
        assert broker.commits[P0] == [10, 11]


class TestStreamConsumer:
    """Tests for StreamConsumer."""

    async def test_three_partitions_end_to_end(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        """3 partitions x 100 messages: 300 documents and every cursor at 100."""
        partitions = [PartitionId("events", p) for p in range(3)]
        for partition in partitions:
            broker.produce_json(partition, 100)

        consumer = build_consumer(broker, es_client, leases, consumer_config(max_size=30))
        await consumer.start()
        assert consumer.assigned == partitions

        await wait_until(broker.caught_up)
        await consumer.stop()

        assert fake_es.document_count == 300
        assert {p: broker.committed[p] for p in partitions} == {p: 100 for p in partitions}
        for partition in partitions:
            assert_strictly_increasing(broker.commits[partition])
            assert broker.commits[partition] == [30, 60, 90, 100]

    async def test_dead_letters_are_the_only_gaps(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        bad = {5, 17}
        broker.produce(
            P0,
            [make_message(o, raw=b"{broken") if o in bad else make_message(o) for o in range(30)],
        )
        mapper = DocumentMapper()
        expected_ids = {mapper.map(make_message(o)).id for o in range(30) if o not in bad}

        consumer = build_consumer(broker, es_client, leases)
        await consumer.start()
        await wait_until(broker.caught_up)
        await consumer.stop()

        indexed = {doc_id for docs in fake_es.indices.values() for doc_id in docs}
        assert indexed == expected_ids
        assert_strictly_increasing(broker.commits[P0])
        assert broker.committed[P0] == 30

    async def test_batch_of_only_dead_letters_advances_cursor(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        broker.produce(P0, [make_message(o, raw=b"not json") for o in range(5)])

        consumer = build_consumer(broker, es_client, leases, consumer_config(max_wait_ms=20))
        await consumer.start()
        await wait_until(broker.caught_up)
        await consumer.stop()

        assert broker.committed[P0] == 5
        assert fake_es.bulk_calls == []

    async def test_slow_arrival_flushes_on_max_wait(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        broker.produce_json(P0, 3)

        consumer = build_consumer(
            broker, es_client, leases, consumer_config(max_size=100, max_wait_ms=30)
        )
        await consumer.start()
        # Nothing reaches max_size; only the timer can flush
        await wait_until(lambda: broker.committed.get(P0) == 3)
        assert fake_es.document_count == 3

        broker.produce_json(P0, 2, start=3)
        await wait_until(lambda: broker.committed.get(P0) == 5)
        await consumer.stop()

        assert broker.commits[P0] == [3, 5]

    async def test_redelivery_does_not_duplicate(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        broker.produce_json(P0, 50)
        consumer = build_consumer(broker, es_client, leases)
        await consumer.start()
        await wait_until(broker.caught_up)
        await consumer.stop()
        first_pass = {index: dict(docs) for index, docs in fake_es.indices.items()}

        # Crash before the last commits landed: the group replays from offset 20
        broker.committed[P0] = 20
        broker.positions.clear()
        replay = build_consumer(broker, es_client, leases)
        await replay.start()
        await wait_until(broker.caught_up)
        await replay.stop()

        assert fake_es.document_count == 50
        assert fake_es.indices == first_pass
        assert sum(len(call) for call in fake_es.bulk_calls) == 80

    async def test_backpressure_stops_polling(
        self, broker: FakeBroker, es_client: ElasticsearchClient, leases: IndexLeaseTable
    ) -> None:
        broker.produce_json(P0, 50)
        writer = GatedWriter()
        consumer = StreamConsumer(
            broker, DocumentMapper(), writer, config=consumer_config(max_size=5, max_in_flight=2)
        )
        await consumer.start()

        await wait_until(lambda: len(writer.batches) == 2)
        await asyncio.sleep(0.05)
        # The worker is parked on the oldest batch: no third batch, no commits
        assert len(writer.batches) == 2
        assert P0 not in broker.commits

        writer.release(0)
        await wait_until(lambda: len(writer.batches) == 3)
        assert broker.commits[P0] == [5]

        writer.release_all()
        await wait_until(broker.caught_up)
        await consumer.stop()
        assert broker.commits[P0] == list(range(5, 51, 5))

    async def test_commits_follow_batch_order(
        self, broker: FakeBroker, es_client: ElasticsearchClient, leases: IndexLeaseTable
    ) -> None:
        """A later batch finishing first does not commit before the earlier one."""
        broker.produce_json(P0, 10)
        writer = GatedWriter()
        consumer = StreamConsumer(
            broker, DocumentMapper(), writer, config=consumer_config(max_size=5, max_in_flight=3)
        )
        await consumer.start()
        await wait_until(lambda: len(writer.batches) == 2)

        writer.release(5)
        await asyncio.sleep(0.05)
        assert P0 not in broker.commits

        writer.release(0)
        await wait_until(lambda: broker.committed.get(P0) == 10)
        await consumer.stop()
        assert broker.commits[P0] == [5, 10]

    async def test_graceful_stop_mid_batch_commits_whole_batch(
        self, broker: FakeBroker, es_client: ElasticsearchClient, leases: IndexLeaseTable
    ) -> None:
        broker.produce_json(P0, 50)
        writer = GatedWriter()
        consumer = StreamConsumer(
            broker, DocumentMapper(), writer, config=consumer_config(max_size=50)
        )
        await consumer.start()
        await wait_until(lambda: len(writer.batches) == 1)

        stopping = asyncio.create_task(consumer.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert P0 not in broker.commits

        writer.release(0)
        await asyncio.wait_for(stopping, timeout=1)
        assert broker.commits[P0] == [50]

    async def test_forced_stop_mid_batch_commits_nothing(
        self, broker: FakeBroker, es_client: ElasticsearchClient, leases: IndexLeaseTable
    ) -> None:
        broker.produce_json(P0, 50)
        writer = GatedWriter()
        consumer = StreamConsumer(
            broker, DocumentMapper(), writer, config=consumer_config(max_size=50)
        )
        await consumer.start()
        await wait_until(lambda: len(writer.batches) == 1)

        await consumer.abort()
        writer.release_all()
        await asyncio.sleep(0.02)

        assert P0 not in broker.commits
        assert consumer.assigned == []

    async def test_revoked_partition_is_drained_and_committed(
        self, broker: FakeBroker, fake_es: FakeElasticsearch, es_client: ElasticsearchClient,
        leases: IndexLeaseTable,
    ) -> None:
        p1 = PartitionId("events", 1)
        broker.produce_json(P0, 20)
        broker.produce_json(p1, 20)

        consumer = build_consumer(
            broker, es_client, leases, consumer_config(max_size=100, max_wait_ms=10_000)
        )
        await consumer.start()
        await wait_until(lambda: broker.positions.get(P0) == 20)

        await broker.revoke([P0])

        assert broker.committed[P0] == 20
        assert consumer.assigned == [p1]

        await broker.reassign([P0])
        assert consumer.assigned == [P0, p1]
        await consumer.stop()
        assert broker.commits[P0] == [20]
        assert fake_es.document_count == 40

    async def test_offset_regression_is_fatal(
        self, broker: FakeBroker, es_client: ElasticsearchClient, leases: IndexLeaseTable
    ) -> None:
        broker.produce(P0, [make_message(0), make_message(1), make_message(1)])

        consumer = build_consumer(broker, es_client, leases)
        await consumer.start()
        error = await asyncio.wait_for(consumer.wait_failed(), timeout=2)
        await consumer.stop()

        assert isinstance(error, OffsetOrderError)
        assert P0 not in broker.commits

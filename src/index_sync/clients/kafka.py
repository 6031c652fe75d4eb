"""Async Kafka client wrapper using aiokafka."""

import json
import logging
from typing import Any, Protocol

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener, TopicPartition
from aiokafka.errors import CommitFailedError, IllegalStateError, KafkaError
from pydantic import BaseModel, Field

from index_sync.config import Settings
from index_sync.errors import CommitError, StartupError
from index_sync.indexing.types import Message, PartitionId

logger = logging.getLogger(__name__)


class ProducerConfig(BaseModel):
    """Configuration for Kafka producer (dead-letter publishing)."""

    bootstrap_servers: list[str] = Field(
        default=["localhost:9092"], description="Kafka bootstrap servers"
    )
    client_id: str = Field(default="index-sync-producer", description="Kafka client ID")
    compression_type: str = Field(default="gzip", description="Compression type")
    request_timeout_ms: int = Field(default=30000, description="Request timeout in milliseconds")


class ConsumerConfig(BaseModel):
    """Configuration for Kafka consumer.

    Auto commit is always off: offsets are committed by the stream consumer
    only after the index writer confirms durability.
    """

    bootstrap_servers: list[str] = Field(
        default=["localhost:9092"], description="Kafka bootstrap servers"
    )
    topics: list[str] = Field(default=["events"], description="Topics to subscribe to")
    group_id: str = Field(default="index-sync", description="Consumer group ID")
    client_id: str = Field(default="index-sync", description="Kafka client ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset strategy")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    max_poll_interval_ms: int = Field(default=300000, description="Max poll interval (5 minutes)")


class AssignmentListener(Protocol):
    """Receives partition assignment changes from the broker."""

    async def on_partitions_assigned(self, partitions: list[PartitionId]) -> None: ...

    async def on_partitions_revoked(self, partitions: list[PartitionId]) -> None: ...


class _RebalanceBridge(ConsumerRebalanceListener):
    """Translates aiokafka rebalance callbacks into PartitionId lists."""

    def __init__(self, listener: AssignmentListener) -> None:
        self._listener = listener

    async def on_partitions_revoked(self, revoked: set[TopicPartition]) -> None:
        partitions = sorted(PartitionId(tp.topic, tp.partition) for tp in revoked)
        if partitions:
            logger.info(f"Partitions revoked: {', '.join(map(str, partitions))}")
            await self._listener.on_partitions_revoked(partitions)

    async def on_partitions_assigned(self, assigned: set[TopicPartition]) -> None:
        partitions = sorted(PartitionId(tp.topic, tp.partition) for tp in assigned)
        if partitions:
            logger.info(f"Partitions assigned: {', '.join(map(str, partitions))}")
            await self._listener.on_partitions_assigned(partitions)


class KafkaClient:
    """Async Kafka client with one group consumer and a lazily created producer.

    The consumer is driven per partition: each partition worker polls only its
    own partition and commits only its own offsets.
    """

    def __init__(
        self,
        producer_config: ProducerConfig | None = None,
        consumer_config: ConsumerConfig | None = None,
    ) -> None:
        """Initialize Kafka client.

        Args:
            producer_config: Producer configuration.
            consumer_config: Consumer configuration.
        """
        self._producer_config = producer_config or ProducerConfig()
        self._consumer_config = consumer_config or ConsumerConfig()
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "KafkaClient":
        return cls(
            producer_config=ProducerConfig(bootstrap_servers=settings.bootstrap_servers),
            consumer_config=ConsumerConfig(
                bootstrap_servers=settings.bootstrap_servers,
                topics=settings.kafka_topics,
                group_id=settings.kafka_consumer_group,
                auto_offset_reset=settings.kafka_auto_offset_reset,
                session_timeout_ms=settings.kafka_session_timeout_ms,
                max_poll_interval_ms=settings.kafka_max_poll_interval_ms,
            ),
        )

    async def start(self, listener: AssignmentListener) -> None:
        """Create the group consumer and subscribe to the configured topics.

        Args:
            listener: Receives partition assignments and revocations.

        Raises:
            StartupError: If the brokers cannot be reached.
        """
        if self._consumer is not None:
            logger.warning("Kafka consumer already started")
            return

        config = self._consumer_config
        logger.info(
            f"Creating Kafka consumer for topics {config.topics} with group {config.group_id}"
        )
        consumer = AIOKafkaConsumer(
            bootstrap_servers=config.bootstrap_servers,
            group_id=config.group_id,
            client_id=config.client_id,
            auto_offset_reset=config.auto_offset_reset,
            enable_auto_commit=False,
            session_timeout_ms=config.session_timeout_ms,
            max_poll_interval_ms=config.max_poll_interval_ms,
        )
        consumer.subscribe(topics=config.topics, listener=_RebalanceBridge(listener))

        try:
            await consumer.start()
        except KafkaError as e:
            await consumer.stop()
            raise StartupError(f"cannot reach Kafka at {config.bootstrap_servers}: {e}") from e

        self._consumer = consumer
        logger.info("Kafka consumer started")

    async def poll(
        self, partition: PartitionId, timeout_ms: int, max_records: int
    ) -> list[Message]:
        """Fetch the next records of one partition.

        Blocks until records are available or ``timeout_ms`` elapses.

        Returns:
            Messages in offset order; empty on timeout or when the partition
            is no longer assigned.
        """
        consumer = self._require_consumer()
        tp = TopicPartition(partition.topic, partition.partition)
        try:
            records = await consumer.getmany(tp, timeout_ms=timeout_ms, max_records=max_records)
        except IllegalStateError:
            logger.debug(f"Partition {partition} not assigned, skipping poll")
            return []

        return [
            Message(
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                value=record.value or b"",
                timestamp=record.timestamp,
                key=record.key,
            )
            for record in records.get(tp, [])
        ]

    async def commit(self, partition: PartitionId, offset: int) -> None:
        """Commit the next offset to read for one partition.

        Raises:
            CommitError: If the group rejected the commit (partition revoked).
        """
        consumer = self._require_consumer()
        tp = TopicPartition(partition.topic, partition.partition)
        try:
            await consumer.commit({tp: offset})
        except (CommitFailedError, IllegalStateError) as e:
            raise CommitError(f"commit of {partition}@{offset} rejected: {e}") from e
        logger.debug(f"Committed {partition}@{offset}")

    async def committed(self, partition: PartitionId) -> int | None:
        """Last committed offset of a partition, if any."""
        consumer = self._require_consumer()
        return await consumer.committed(TopicPartition(partition.topic, partition.partition))

    async def get_producer(self) -> AIOKafkaProducer:
        """Get or create Kafka producer.

        Returns:
            AIOKafkaProducer instance.
        """
        if self._producer is None:
            logger.info(f"Creating Kafka producer for {self._producer_config.bootstrap_servers}")
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._producer_config.bootstrap_servers,
                client_id=self._producer_config.client_id,
                compression_type=self._producer_config.compression_type,
                request_timeout_ms=self._producer_config.request_timeout_ms,
            )
            await self._producer.start()
            logger.info("Kafka producer started")

        return self._producer

    async def send_event(self, topic: str, key: str, message: dict[str, Any]) -> None:
        """Send an event to a Kafka topic.

        Args:
            topic: Kafka topic name.
            key: Message key for partitioning.
            message: Message payload.
        """
        producer = await self.get_producer()

        value = json.dumps(message, default=str).encode("utf-8")
        key_bytes = key.encode("utf-8")

        await producer.send_and_wait(topic, value=value, key=key_bytes)
        logger.debug(f"Sent message to {topic} with key {key}")

    async def close(self) -> None:
        """Close the producer and the consumer."""
        logger.info("Closing Kafka client")

        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
            logger.info("Kafka consumer stopped")

    def _require_consumer(self) -> AIOKafkaConsumer:
        if self._consumer is None:
            raise RuntimeError("Kafka consumer not started. Call start() first.")
        return self._consumer

    async def __aenter__(self) -> "KafkaClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

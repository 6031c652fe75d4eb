"""Service lifecycle: startup checks, supervision and bounded graceful shutdown."""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator
from enum import Enum
from typing import Any

import uvicorn

from index_sync.clients.elasticsearch import ElasticsearchClient
from index_sync.clients.kafka import KafkaClient
from index_sync.config import Settings
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.errors import ConnectivityError, SearchEngineError, StartupError
from index_sync.indexing.batch import BatchConfig
from index_sync.indexing.consumer import PartitionSource, StreamConsumer, StreamConsumerConfig
from index_sync.indexing.dead_letter import DeadLetterSink
from index_sync.indexing.mapper import DocumentMapper, MapperConfig, sanitize_index_name
from index_sync.indexing.writer import IndexWriter, WriterConfig
from index_sync.retention.sweeper import RetentionSweeper, SweeperConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_FORCED = 2


class ServiceState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def sweep_patterns(settings: Settings) -> list[str]:
    """Index patterns the sweeper manages.

    Explicit ``index_patterns`` win; otherwise one ``<prefix>-*`` pattern per
    consumed topic (or the single configured prefix).
    """
    if settings.index_patterns:
        return settings.index_patterns
    prefixes = [settings.index_prefix] if settings.index_prefix else settings.kafka_topics
    return sorted({f"{sanitize_index_name(prefix)}-*" for prefix in prefixes})


def build_sweeper(
    settings: Settings, client: ElasticsearchClient, leases: IndexLeaseTable
) -> RetentionSweeper:
    config = SweeperConfig(
        patterns=sweep_patterns(settings),
        retention_days=settings.retention_days,
        date_format=settings.index_date_format,
        interval_seconds=settings.sweep_interval_seconds,
        snapshot_repository=settings.snapshot_repository,
        snapshot_poll_interval_seconds=settings.snapshot_poll_interval_seconds,
    )
    return RetentionSweeper(client, leases, config)


class _SidecarServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the coordinator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class Coordinator:
    """Owns the lease table, the stream consumer and the retention sweeper.

    The consumer and the sweeper run independently and share only the search
    engine client and the lease table. Shutdown stops the sweeper timer and
    interrupts its snapshot waits while the consumer drains (flush, wait for
    in-flight writes, commit), then closes the clients, all within
    ``shutdown_timeout_seconds``; past that deadline the remaining work is
    cancelled and :meth:`run` reports a forced exit.
    """

    def __init__(
        self,
        settings: Settings,
        es_client: ElasticsearchClient | None = None,
        kafka_client: KafkaClient | None = None,
        source: PartitionSource | None = None,
    ) -> None:
        """Build the service components from settings.

        Args:
            settings: Service settings.
            es_client: Search engine client; built from settings when None.
            kafka_client: Broker client; built from settings when None.
            source: Partition source for the consumer; defaults to the broker client.
        """
        self.settings = settings
        self.es_client = es_client or ElasticsearchClient.from_settings(settings)
        self.kafka_client = kafka_client or KafkaClient.from_settings(settings)
        self.leases = IndexLeaseTable()

        self.dead_letters = DeadLetterSink(
            publisher=self.kafka_client if settings.dead_letter_topic else None,
            topic=settings.dead_letter_topic,
        )
        self.mapper = DocumentMapper(
            MapperConfig(
                index_prefix=settings.index_prefix,
                index_date_format=settings.index_date_format,
                id_field=settings.id_field,
                required_fields=settings.required_fields,
            )
        )
        self.writer = IndexWriter(
            client=self.es_client,
            leases=self.leases,
            dead_letters=self.dead_letters,
            config=WriterConfig(
                max_attempts=settings.retry_max_attempts,
                base_delay_ms=settings.retry_base_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
                connect_max_delay_ms=settings.connect_retry_max_delay_ms,
            ),
        )
        self.consumer = StreamConsumer(
            source=source or self.kafka_client,
            mapper=self.mapper,
            writer=self.writer,
            dead_letters=self.dead_letters,
            config=StreamConsumerConfig(
                batch_config=BatchConfig(
                    max_size=settings.batch_max_size, max_wait_ms=settings.batch_max_wait_ms
                ),
                poll_timeout_ms=settings.kafka_poll_timeout_ms,
                max_poll_records=settings.kafka_max_poll_records,
                max_in_flight_batches=settings.max_in_flight_batches,
                drain_timeout_s=settings.shutdown_timeout_seconds,
            ),
        )
        self.sweeper = build_sweeper(settings, self.es_client, self.leases)

        self.state = ServiceState.STARTING
        self._shutdown_requested = asyncio.Event()
        self._sweeper_task: asyncio.Task[None] | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Check connectivity and start consuming.

        Raises:
            StartupError: If the search engine or the broker is unreachable.
        """
        logger.info("Starting index-sync...")
        logger.info(f"Elasticsearch URL: {self.settings.elasticsearch_url}")
        logger.info(f"Kafka topics: {self.settings.kafka_topics}")

        try:
            await self.es_client.connect()
        except (ConnectivityError, SearchEngineError) as e:
            raise StartupError(f"cannot reach Elasticsearch: {e}") from e

        await self.consumer.start()

        if self.settings.sweep_enabled:
            self._sweeper_task = asyncio.create_task(self.sweeper.run(), name="retention-sweeper")
        else:
            logger.info("Retention sweeper disabled")

        self.state = ServiceState.RUNNING
        logger.info("index-sync startup complete")

    async def start_http(self, app: Any) -> None:
        """Serve the health and metrics app in the current event loop."""
        config = uvicorn.Config(
            app,
            host=self.settings.http_host,
            port=self.settings.http_port,
            log_config=None,
            lifespan="off",
        )
        self._server = _SidecarServer(config)
        self._server_task = asyncio.create_task(self._server.serve(), name="http-sidecar")
        logger.info(f"HTTP sidecar listening on {self.settings.http_host}:{self.settings.http_port}")

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._shutdown_requested.is_set():
            logger.info(f"Shutdown {reason}")
            self._shutdown_requested.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown, f"on {sig.name}")

    async def run(self, app: Any | None = None) -> int:
        """Run until a shutdown signal or a fatal worker failure.

        Args:
            app: Optional ASGI app served by the HTTP sidecar.

        Returns:
            Process exit code: 0 clean, 1 startup or fatal failure, 2 forced exit.
        """
        try:
            await self.start()
        except StartupError as e:
            logger.error(f"Startup failed: {e}")
            self.state = ServiceState.STOPPED
            await self._close_clients()
            return EXIT_STARTUP_FAILURE

        if app is not None and self.settings.http_enabled:
            await self.start_http(app)

        shutdown = asyncio.create_task(self._shutdown_requested.wait())
        failure = asyncio.create_task(self.consumer.wait_failed())
        done, _ = await asyncio.wait({shutdown, failure}, return_when=asyncio.FIRST_COMPLETED)
        shutdown.cancel()
        failure.cancel()

        code = await self.shutdown()
        if failure in done and code == EXIT_OK:
            logger.error(f"Stopped after fatal worker failure: {failure.result()}")
            code = EXIT_STARTUP_FAILURE
        return code

    async def shutdown(self) -> int:
        """Stop everything within the shutdown timeout.

        Returns:
            0 when every component stopped in time, 2 when work was cancelled.
        """
        self.state = ServiceState.STOPPING
        timeout = self.settings.shutdown_timeout_seconds
        logger.info(f"Shutting down (timeout {timeout:.0f}s)...")
        self.sweeper.stop()

        try:
            await asyncio.wait_for(self._graceful_stop(), timeout=timeout)
        except TimeoutError:
            logger.critical(
                f"Forced exit: shutdown did not finish within {timeout:.0f}s, "
                "cancelling remaining work; uncommitted messages will be redelivered"
            )
            await self._force_stop()
            self.state = ServiceState.STOPPED
            return EXIT_FORCED

        self.state = ServiceState.STOPPED
        logger.info("index-sync shutdown complete")
        return EXIT_OK

    def status(self) -> dict[str, Any]:
        """Snapshot of the service state for the health endpoints."""
        report = self.sweeper.last_report
        return {
            "state": self.state.value,
            "assigned_partitions": [str(p) for p in self.consumer.assigned],
            "committed_offsets": {
                str(p): offset for p, offset in self.consumer.committed_offsets.items()
            },
            "last_sweep": report.model_dump() if report else None,
        }

    async def _graceful_stop(self) -> None:
        # The consumer drains while a sweep in progress winds down
        await asyncio.gather(self.consumer.stop(), self._stop_sweeper())
        await self._stop_http()
        await self._close_clients()

    async def _stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        try:
            await self._sweeper_task
        except Exception as e:
            logger.error(f"Retention sweeper failed: {e}", exc_info=e)

    async def _force_stop(self) -> None:
        await self.consumer.abort()
        tasks = [t for t in (self._sweeper_task, self._server_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_clients()

    async def _stop_http(self) -> None:
        if self._server is None or self._server_task is None:
            return
        self._server.should_exit = True
        await self._server_task

    async def _close_clients(self) -> None:
        try:
            await self.kafka_client.close()
        except Exception as e:
            logger.error(f"Error closing Kafka client: {e}")
        try:
            await self.es_client.close()
        except Exception as e:
            logger.error(f"Error closing Elasticsearch client: {e}")

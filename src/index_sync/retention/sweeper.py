"""Periodic deletion of indices older than the retention period."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from index_sync.clients.elasticsearch import ElasticsearchClient, IndexRecord
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.errors import ConnectivityError, DeletionError, SearchEngineError
from index_sync.retention.age import index_age
from index_sync.utils.metrics import record_sweep

logger = logging.getLogger(__name__)

# Terminal snapshot states other than SUCCESS
_FAILED_SNAPSHOT_STATES = frozenset({"FAILED", "PARTIAL", "INCOMPATIBLE", "ABORTED"})


class SweepInterrupted(Exception):
    """Raised inside a pass when the sweeper is stopped while waiting on a snapshot."""


class SweeperConfig(BaseModel):
    """Configuration for the retention sweeper."""

    patterns: list[str] = Field(description="Index name patterns to consider")
    retention_days: int = Field(default=15, ge=0, description="Indices older than this expire")
    date_format: str = Field(default="%Y.%m.%d", description="Date suffix format of index names")
    interval_seconds: float = Field(default=3600.0, gt=0, description="Time between sweeps")
    snapshot_repository: str | None = Field(
        default=None, description="Snapshot repository; no snapshot is taken when unset"
    )
    snapshot_poll_interval_seconds: float = Field(
        default=10.0, description="Wait between snapshot status checks"
    )


class SweepReport(BaseModel):
    """Result of one sweep pass.

    Attributes:
        expired: Indices past retention, oldest first.
        deleted: Indices deleted (or found already gone).
        deferred: Expired indices skipped because a write held their lease.
        failed: Expired indices whose snapshot or deletion failed.
        kept: Indices within retention or of unknown age.
        dry_run: Whether deletions were skipped on purpose.
        error: Why the pass could not run, when indices could not be listed.
    """

    expired: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    kept: list[str] = Field(default_factory=list)
    dry_run: bool = False
    error: str | None = None


class RetentionSweeper:
    """Deletes expired indices one at a time, oldest first.

    Deletion takes the exclusive lease of the index and never waits for it: an
    index being written to is deferred to the next pass. A failure on one index
    is logged and the pass moves on to the next.
    """

    def __init__(
        self,
        client: ElasticsearchClient,
        leases: IndexLeaseTable,
        config: SweeperConfig,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the sweeper.

        Args:
            client: Search engine client, shared with the index writer.
            leases: Lease table shared with the index writer.
            config: Sweeper configuration.
            clock: Returns the current UTC time; injectable for tests.
            sleep: Snapshot polling sleep; injectable for tests.
        """
        self.client = client
        self.leases = leases
        self.config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._stopping = asyncio.Event()
        self.last_report: SweepReport | None = None

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until stopped."""
        logger.info(
            f"Retention sweeper started: patterns {self.config.patterns}, "
            f"retention {self.config.retention_days}d, every {self.config.interval_seconds:.0f}s"
        )
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.exception(f"Sweep pass failed unexpectedly: {e}")
                record_sweep(success=False, deleted=0, deferred=0, failed=0)
                self.last_report = SweepReport(error=str(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.interval_seconds)
            except TimeoutError:
                pass
        logger.info("Retention sweeper stopped")

    def stop(self) -> None:
        """Stop the timer and interrupt any snapshot wait of the pass in progress."""
        self._stopping.set()

    async def sweep_once(self, dry_run: bool = False) -> SweepReport:
        """Run one sweep pass.

        Args:
            dry_run: Report what would be deleted without deleting anything.

        Returns:
            What happened to each matching index.
        """
        report = SweepReport(dry_run=dry_run)
        try:
            records = await self.client.list_indices(self.config.patterns)
        except (ConnectivityError, SearchEngineError) as e:
            logger.error(f"Cannot list indices for {self.config.patterns}, skipping sweep: {e}")
            record_sweep(success=False, deleted=0, deferred=0, failed=0)
            report.error = str(e)
            self.last_report = report
            return report

        now = self._clock()
        expired: list[tuple[timedelta, IndexRecord]] = []
        for record in records:
            age = index_age(record, self.config.date_format, now)
            # Whole days elapsed, rounded down
            if age is not None and age.days > self.config.retention_days:
                expired.append((age, record))
            else:
                report.kept.append(record.name)

        expired.sort(key=lambda pair: pair[0], reverse=True)
        report.expired = [record.name for _, record in expired]
        logger.info(
            f"Sweep found {len(records)} indices, {len(expired)} older than "
            f"{self.config.retention_days} days"
        )

        for age, record in expired:
            if dry_run:
                logger.info(f"[dry run] would delete {record.name} (age {age.days}d)")
                continue
            if self._stopping.is_set():
                logger.info("Sweep interrupted by shutdown")
                break
            try:
                await self._sweep_index(record.name, report)
            except SweepInterrupted:
                logger.info(f"Sweep interrupted by shutdown, deferring {record.name}")
                report.deferred.append(record.name)
                break

        record_sweep(
            success=True,
            deleted=len(report.deleted),
            deferred=len(report.deferred),
            failed=len(report.failed),
        )
        logger.info(
            f"Sweep finished: {len(report.deleted)} deleted, {len(report.deferred)} deferred, "
            f"{len(report.failed)} failed, {len(report.kept)} kept"
        )
        self.last_report = report
        return report

    async def _sweep_index(self, name: str, report: SweepReport) -> None:
        async with self.leases.delete_lease(name) as granted:
            if not granted:
                logger.info(f"Index {name} is being written to, deferring deletion")
                report.deferred.append(name)
                return
            try:
                await self._delete(name)
            except DeletionError as e:
                logger.error("index_delete_failed", extra={"index": e.index, "error": str(e)})
                report.failed.append(name)
                return
        report.deleted.append(name)

    async def _delete(self, name: str) -> None:
        """Snapshot (when configured) and delete one index.

        Raises:
            DeletionError: If the snapshot or the deletion failed.
        """
        try:
            if self.config.snapshot_repository:
                await self._snapshot(self.config.snapshot_repository, name)
            await self.client.delete_index(name)
        except (ConnectivityError, SearchEngineError) as e:
            raise DeletionError(name, str(e)) from e

    async def _snapshot(self, repository: str, name: str) -> None:
        # Elasticsearch runs one snapshot at a time
        while await self.client.snapshot_running():
            logger.info(f"Another snapshot is running, waiting before snapshotting {name}")
            await self._pause()

        await self.client.create_snapshot(repository, name, name)

        while True:
            state = await self.client.snapshot_state(repository, name)
            if state == "SUCCESS":
                logger.info(f"Snapshot {name} succeeded")
                return
            if state in _FAILED_SNAPSHOT_STATES:
                raise DeletionError(name, f"snapshot ended in state {state}")
            logger.info(f"Snapshot {name} is not ready ({state}), waiting")
            await self._pause()

    async def _pause(self) -> None:
        """Sleep one snapshot poll interval, returning early when stopped.

        Raises:
            SweepInterrupted: If the sweeper was stopped.
        """
        if not self._stopping.is_set():
            sleeper = asyncio.ensure_future(self._sleep(self.config.snapshot_poll_interval_seconds))
            stopper = asyncio.ensure_future(self._stopping.wait())
            try:
                await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                sleeper.cancel()
                stopper.cancel()
        if self._stopping.is_set():
            raise SweepInterrupted

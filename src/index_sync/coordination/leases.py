"""Per-index advisory leases between the index writer and the retention sweeper."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable

logger = logging.getLogger(__name__)


class IndexLeaseTable:
    """Lease table keyed by index name.

    Writers take *shared* leases: any number of partition workers may write to
    the same index at once. The sweeper takes an *exclusive* lease before it
    deletes an index and never waits for one: if a writer holds the index, or
    another deletion is in progress, the attempt fails and the sweeper defers
    the index to its next pass. A writer arriving while an index is being
    deleted waits until the deletion releases it.
    """

    def __init__(self) -> None:
        self._writers: dict[str, int] = {}
        self._deleting: set[str] = set()
        self._changed = asyncio.Condition()

    @contextlib.asynccontextmanager
    async def write_lease(self, indices: Iterable[str]) -> AsyncIterator[None]:
        """Hold shared leases on all given indices for the duration of a write.

        Waits while any of the indices is held by a deletion.
        """
        names = sorted(set(indices))
        async with self._changed:
            await self._changed.wait_for(lambda: not self._deleting.intersection(names))
            for name in names:
                self._writers[name] = self._writers.get(name, 0) + 1
        try:
            yield
        finally:
            async with self._changed:
                for name in names:
                    remaining = self._writers[name] - 1
                    if remaining:
                        self._writers[name] = remaining
                    else:
                        del self._writers[name]
                self._changed.notify_all()

    def try_acquire_delete(self, index: str) -> bool:
        """Take the exclusive lease on an index without waiting.

        Returns:
            True if the lease was granted; False if a write or another
            deletion holds the index.
        """
        # Runs without awaiting, so it cannot interleave with write_lease
        if self._writers.get(index) or index in self._deleting:
            return False
        self._deleting.add(index)
        return True

    async def release_delete(self, index: str) -> None:
        """Release an exclusive lease and wake writers waiting on it."""
        async with self._changed:
            self._deleting.discard(index)
            self._changed.notify_all()

    @contextlib.asynccontextmanager
    async def delete_lease(self, index: str) -> AsyncIterator[bool]:
        """Try-or-defer exclusive lease as a context manager.

        Yields:
            Whether the lease was granted. The body must skip the deletion
            when it is False.
        """
        granted = self.try_acquire_delete(index)
        try:
            yield granted
        finally:
            if granted:
                await self.release_delete(index)

    def is_writing(self, index: str) -> bool:
        return bool(self._writers.get(index))

    @property
    def active_writes(self) -> dict[str, int]:
        """Snapshot of indices currently held by writers and their holder counts."""
        return dict(self._writers)

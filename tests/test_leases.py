"""Tests for the index lease table."""

import asyncio

from index_sync.coordination.leases import IndexLeaseTable


class TestIndexLeaseTable:
    """Tests for shared write leases and try-or-defer delete leases."""

    async def test_write_leases_are_shared(self, leases: IndexLeaseTable) -> None:
        async with leases.write_lease(["a"]), leases.write_lease(["a", "b"]):
            assert leases.active_writes == {"a": 2, "b": 1}
        assert leases.active_writes == {}

    async def test_duplicate_indices_counted_once(self, leases: IndexLeaseTable) -> None:
        async with leases.write_lease(["a", "a", "a"]):
            assert leases.active_writes == {"a": 1}

    async def test_delete_deferred_while_writing(self, leases: IndexLeaseTable) -> None:
        async with leases.write_lease(["a"]):
            assert not leases.try_acquire_delete("a")
            assert leases.try_acquire_delete("b")
        assert leases.try_acquire_delete("a")

    async def test_delete_lease_is_exclusive(self, leases: IndexLeaseTable) -> None:
        async with leases.delete_lease("a") as granted:
            assert granted
            async with leases.delete_lease("a") as again:
                assert not again
        async with leases.delete_lease("a") as granted:
            assert granted

    async def test_writer_waits_for_deletion(self, leases: IndexLeaseTable) -> None:
        entered = asyncio.Event()

        async def write() -> None:
            async with leases.write_lease(["a"]):
                entered.set()

        assert leases.try_acquire_delete("a")
        task = asyncio.create_task(write())
        await asyncio.sleep(0.01)
        assert not entered.is_set()

        await leases.release_delete("a")
        await asyncio.wait_for(task, timeout=1)
        assert entered.is_set()

    async def test_writer_on_other_index_not_blocked(self, leases: IndexLeaseTable) -> None:
        assert leases.try_acquire_delete("a")
        async with asyncio.timeout(1):
            async with leases.write_lease(["b"]):
                assert leases.is_writing("b")

    async def test_lease_released_on_error(self, leases: IndexLeaseTable) -> None:
        try:
            async with leases.write_lease(["a"]):
                raise RuntimeError("bulk failed")
        except RuntimeError:
            pass
        assert not leases.is_writing("a")

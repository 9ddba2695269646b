"""
Tests for lock managers and the single-instance guards.
"""

import asyncio

import pytest

from jobengine.exceptions import LockUnavailable
from jobengine.locks import on_one_server, without_overlapping
from jobengine.locks.guards import one_server_key, overlap_key


class TestLockManager:
    """Contract tests run against every lock manager."""

    async def test_mutual_exclusion(self, locks):
        first = await locks.acquire("report", ttl=60)

        assert first is not None
        assert await locks.acquire("report", ttl=60) is None
        assert await locks.acquire("other", ttl=60) is not None

    async def test_lock_expires_after_ttl(self, locks, clock):
        first = await locks.acquire("report", ttl=60)

        clock.advance(59)
        assert await locks.acquire("report", ttl=60) is None

        clock.advance(1)
        second = await locks.acquire("report", ttl=60)
        assert second is not None
        assert second.owner_token != first.owner_token

    async def test_release_requires_owner(self, locks, clock):
        first = await locks.acquire("report", ttl=10)
        clock.advance(10)
        second = await locks.acquire("report", ttl=10)

        assert await locks.release(first) is False
        assert (await locks.get("report")).owner_token == second.owner_token

        assert await locks.release(second) is True
        assert await locks.get("report") is None

    async def test_force_release(self, locks):
        await locks.acquire("report", ttl=60)

        assert await locks.force_release("report") is True
        assert await locks.acquire("report", ttl=60) is not None

    async def test_get_ignores_expired(self, locks, clock):
        lock = await locks.acquire("report", ttl=5)
        assert (await locks.get("report")).expires_at == lock.expires_at

        clock.advance(5)
        assert await locks.get("report") is None

    async def test_block_gives_up_after_max_wait(self, locks):
        await locks.acquire("report", ttl=60)

        assert await locks.block("report", ttl=60, max_wait=0.05) is None

    async def test_block_waits_for_release(self, memory_locks):
        holder = await memory_locks.acquire("report", ttl=60)

        async def release_soon():
            await asyncio.sleep(0.02)
            await memory_locks.release(holder)

        releaser = asyncio.create_task(release_soon())
        lock = await memory_locks.block("report", ttl=60, max_wait=1.0)
        await releaser

        assert lock is not None
        assert lock.owner_token != holder.owner_token

    async def test_hold_releases_on_exit(self, locks):
        async with locks.hold("report", ttl=60) as lock:
            assert lock.key == "report"
            with pytest.raises(LockUnavailable):
                async with locks.hold("report", ttl=60):
                    pass

        assert await locks.get("report") is None

    async def test_hold_releases_on_error(self, locks):
        with pytest.raises(RuntimeError):
            async with locks.hold("report", ttl=60):
                raise RuntimeError("boom")

        assert await locks.get("report") is None

    async def test_purge_expired(self, locks, clock):
        await locks.acquire("a", ttl=5)
        await locks.acquire("b", ttl=50)
        clock.advance(10)

        assert await locks.purge_expired() == 1
        assert await locks.purge_expired() == 0
        assert await locks.get("b") is not None
        assert await locks.acquire("a", ttl=5) is not None


class TestGuards:
    """Tests for on_one_server and without_overlapping."""

    def test_keys(self):
        assert one_server_key("default", "report") == "schedule-one-server:default:report"
        assert one_server_key("default", "report", slot=7).endswith(":7")
        assert overlap_key("default:sync()") == "job-overlap:default:sync()"

    async def test_one_server_runs_once_per_slot(self, locks):
        runs = []

        async def tick(server: str) -> None:
            try:
                async with on_one_server(locks, "default", "report", estimated_duration=60, slot=1):
                    runs.append(server)
            except LockUnavailable:
                pass

        await tick("a")
        await tick("b")

        assert runs == ["a"]

    async def test_one_server_keeps_lock_after_block(self, locks):
        async with on_one_server(locks, "default", "report", estimated_duration=60, slot=1):
            pass

        assert await locks.get(one_server_key("default", "report", 1)) is not None

    async def test_one_server_next_slot_is_free(self, locks):
        async with on_one_server(locks, "default", "report", estimated_duration=60, slot=1):
            pass
        async with on_one_server(locks, "default", "report", estimated_duration=60, slot=2) as lock:
            assert lock.key.endswith(":2")

    async def test_without_overlapping(self, locks):
        async with without_overlapping(locks, "default:sync()", expires_after=60):
            with pytest.raises(LockUnavailable):
                async with without_overlapping(locks, "default:sync()", expires_after=60):
                    pass

        async with without_overlapping(locks, "default:sync()", expires_after=60):
            pass

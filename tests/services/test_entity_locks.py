"""
Entity lock tests.
Tests the in-process keyed lock, the Redis lock and how services pick between them.
"""

import pytest
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from marketplace.core import locking
from marketplace.core.exceptions import LockAcquisitionError
from marketplace.core.locking import LocalLock, get_entity_lock
from marketplace.db.database import db_manager
from marketplace.db.redis_client import RedisManager, DistributedLock
from marketplace.models.booking import Booking

DISTRIBUTED = {
    "lock_timeout_seconds": 30,
    "lock_blocking_timeout_seconds": 1,
    "enable_distributed_locks": True,
}


@pytest.fixture
def mock_redis_manager():
    """A RedisManager whose client is an AsyncMock."""
    manager = RedisManager()
    manager.redis_client = AsyncMock()
    manager.redis_client.set = AsyncMock(return_value=True)
    manager.redis_client.eval = AsyncMock(return_value=1)
    manager._initialized = True
    return manager


class TestLocalLock:
    @pytest.mark.asyncio
    async def test_timeout_raises_and_cleans_up(self):
        async with LocalLock("booking:1"):
            with pytest.raises(LockAcquisitionError):
                async with LocalLock("booking:1", blocking_timeout=0.05):
                    pass
            assert locking._local_refs["booking:1"] == 1

        assert "booking:1" not in locking._local_locks
        assert "booking:1" not in locking._local_refs

        async with LocalLock("booking:1", blocking_timeout=0.05):
            assert locking._local_refs["booking:1"] == 1

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        events = []

        async def worker(name):
            async with LocalLock("rsvp:event:9"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        for i in range(0, len(events), 2):
            assert events[i].endswith("-in")
            assert events[i + 1] == events[i].replace("-in", "-out")
        assert locking._local_locks == {}

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        async with LocalLock("booking:1"):
            async with LocalLock("booking:2", blocking_timeout=0.05):
                assert set(locking._local_locks) >= {"booking:1", "booking:2"}


class TestGetEntityLock:
    def test_local_by_default(self):
        lock = get_entity_lock("review:3", {"lock_blocking_timeout_seconds": 4})
        assert isinstance(lock, LocalLock)
        assert lock.blocking_timeout == 4

    def test_distributed_when_enabled(self):
        lock = get_entity_lock("review:3", DISTRIBUTED)
        assert isinstance(lock, DistributedLock)
        assert lock.lock_key == "review:3"
        assert lock.timeout == 30
        assert lock.blocking_timeout == 1


class TestDistributedLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, mock_redis_manager):
        lock = DistributedLock(mock_redis_manager, "booking:5", timeout=20, blocking_timeout=1)

        async with lock:
            assert lock.acquired is True

        mock_redis_manager.redis_client.set.assert_awaited_once_with(
            "booking:5", lock.lock_value, nx=True, ex=20
        )
        script, numkeys, key, token = mock_redis_manager.redis_client.eval.await_args.args
        assert numkeys == 1
        assert (key, token) == ("booking:5", lock.lock_value)
        assert "del" in script
        assert lock.acquired is False

    @pytest.mark.asyncio
    async def test_busy_key_raises(self, mock_redis_manager):
        mock_redis_manager.redis_client.set = AsyncMock(return_value=None)
        lock = DistributedLock(mock_redis_manager, "booking:5", blocking_timeout=0.2)

        with pytest.raises(LockAcquisitionError):
            async with lock:
                pass

        mock_redis_manager.redis_client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_leaves_foreign_token(self, mock_redis_manager):
        mock_redis_manager.redis_client.eval = AsyncMock(return_value=0)

        released = await mock_redis_manager.release_lock("booking:5", "stale-token")

        assert released is False
        mock_redis_manager.redis_client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_error_is_logged(self, mock_redis_manager):
        mock_redis_manager.redis_client.eval = AsyncMock(side_effect=ConnectionError("redis down"))
        assert await mock_redis_manager.release_lock("booking:5", "token") is False


class TestServiceLocking:
    @pytest.mark.asyncio
    async def test_create_booking_uses_distributed_lock(self, booking_service, seed, mock_redis_manager):
        booking_service.consistency_config = dict(DISTRIBUTED)
        lock = DistributedLock(mock_redis_manager, "unused")

        with patch("marketplace.core.locking.get_distributed_lock", return_value=lock) as factory:
            booking = await booking_service.create_booking(
                seed.organizer, seed.event, seed.service, Decimal("250.00")
            )

        factory.assert_called_once_with(
            f"booking:event:{seed.event}:service:{seed.service}", timeout=30, blocking_timeout=1
        )
        assert booking["status"] == "pending"
        mock_redis_manager.redis_client.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_busy_lock_aborts_mutation(self, booking_service, seed):
        booking_service.consistency_config = dict(DISTRIBUTED)
        failed_lock = AsyncMock()
        failed_lock.__aenter__ = AsyncMock(side_effect=LockAcquisitionError("Resource is busy, try again"))
        failed_lock.__aexit__ = AsyncMock(return_value=None)

        with patch("marketplace.core.locking.get_distributed_lock", return_value=failed_lock):
            with pytest.raises(LockAcquisitionError):
                await booking_service.create_booking(
                    seed.organizer, seed.event, seed.service, Decimal("250.00")
                )

        with db_manager.get_session() as session:
            assert session.query(Booking).count() == 0

"""Tests for unique-job dispatch locks."""

import pytest

from jobqueue.services.locks import UniqueLock, unique_lock_key


class TestUniqueLockKey:
    """Tests for lock key generation."""

    def test_deterministic_key(self):
        """Same inputs produce same key."""
        assert unique_lock_key("send_email", "user-1") == unique_lock_key(
            "send_email", "user-1"
        )

    def test_different_job_types_different_keys(self):
        """The same unique key under two job types does not collide."""
        assert unique_lock_key("send_email", "user-1") != unique_lock_key(
            "send_sms", "user-1"
        )

    def test_different_unique_keys_different_keys(self):
        assert unique_lock_key("send_email", "user-1") != unique_lock_key(
            "send_email", "user-2"
        )

    def test_key_is_namespaced_hex(self):
        key = unique_lock_key("send_email", "a key with spaces:and:colons")
        assert key.startswith("unique:")
        assert len(key.split(":", 1)[1]) == 64


class TestUniqueLock:
    """Tests for acquire/release against the state store."""

    @pytest.mark.asyncio
    async def test_acquire_once(self, store, clock):
        locks = UniqueLock(store, default_ttl=60, clock=clock)

        assert await locks.acquire("send_email", "user-1") is True
        assert await locks.acquire("send_email", "user-1") is False
        assert await locks.is_locked("send_email", "user-1")

    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self, store, clock):
        locks = UniqueLock(store, clock=clock)
        await locks.acquire("send_email", "user-1")

        assert await locks.release("send_email", "user-1") is True
        assert not await locks.is_locked("send_email", "user-1")
        assert await locks.acquire("send_email", "user-1") is True

    @pytest.mark.asyncio
    async def test_release_missing_lock(self, store):
        locks = UniqueLock(store)
        assert await locks.release("send_email", "nobody") is False

    @pytest.mark.asyncio
    async def test_lock_records_owner_fields(self, store, clock):
        locks = UniqueLock(store, clock=clock)
        await locks.acquire("send_email", "user-1")

        data = await store.get(unique_lock_key("send_email", "user-1"))
        assert data["job_type"] == "send_email"
        assert data["unique_key"] == "user-1"
        assert data["locked_at"] == clock().timestamp()

    @pytest.mark.asyncio
    async def test_default_ttl_applied(self, store, redis_client):
        locks = UniqueLock(store, default_ttl=120)
        await locks.acquire("send_email", "user-1")

        ttl = await redis_client.ttl(
            "test:state:" + unique_lock_key("send_email", "user-1")
        )
        assert 0 < ttl <= 120

"""Unit tests for the Redis auth-state cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.core.auth_state import AuthState, AuthStateCache
from authgate.core.errors import CacheError
from authgate.core.identity import PrincipalRecord


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.fixture
def sample_state():
    return AuthState(
        principal_id=5,
        principal_kind="admin",
        credential_version=4,
        invalid_before_unix=1700000000,
        is_super=True,
        updated_at_unix=1700000100,
    )


class TestAuthStateModel:

    def test_from_record(self):
        record = PrincipalRecord(id=3, kind="user", username="u", credential_version=2,
                                 invalid_before=10, disabled=True, updated_at=20)

        state = AuthState.from_record(record)

        assert state.principal_id == 3
        assert state.principal_kind == "user"
        assert state.credential_version == 2
        assert state.invalid_before_unix == 10
        assert state.disabled is True
        assert state.updated_at_unix > 0


class TestAuthStateCache:
    """Test cases for cache reads, writes and failure reporting."""

    def test_key_layout(self, redis_client):
        assert AuthStateCache(redis_client, prefix="gw").key("admin", 7) == "gw:auth:admin:7"
        assert AuthStateCache(redis_client, prefix="gw:").key("admin", 7) == "gw:auth:admin:7"
        assert AuthStateCache(redis_client).key("user", 1) == "auth:user:1"

    @pytest.mark.asyncio
    async def test_miss(self, redis_client):
        cache = AuthStateCache(redis_client, prefix="gw")

        assert await cache.get("admin", 5) is None
        redis_client.get.assert_awaited_once_with("gw:auth:admin:5")

    @pytest.mark.asyncio
    async def test_set_then_get(self, redis_client, sample_state):
        cache = AuthStateCache(redis_client, prefix="gw", ttl_seconds=120)

        await cache.set(sample_state)

        key, payload = redis_client.set.await_args.args
        assert key == "gw:auth:admin:5"
        assert redis_client.set.await_args.kwargs == {"ex": 120}

        redis_client.get.return_value = payload
        assert await cache.get("admin", 5) == sample_state

    @pytest.mark.asyncio
    async def test_corrupt_entry(self, redis_client):
        redis_client.get.return_value = "{not json"
        cache = AuthStateCache(redis_client)

        with pytest.raises(CacheError):
            await cache.get("admin", 5)

    @pytest.mark.asyncio
    async def test_redis_error(self, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        cache = AuthStateCache(redis_client)

        with pytest.raises(CacheError):
            await cache.get("admin", 5)

    @pytest.mark.asyncio
    async def test_timeout(self, redis_client):
        async def slow_get(key):
            await asyncio.sleep(1)

        redis_client.get = slow_get
        cache = AuthStateCache(redis_client, timeout_seconds=0.01)

        with pytest.raises(CacheError):
            await cache.get("admin", 5)

    @pytest.mark.asyncio
    async def test_invalidate(self, redis_client):
        cache = AuthStateCache(redis_client, prefix="gw")

        await cache.invalidate("user", 9)

        redis_client.delete.assert_awaited_once_with("gw:auth:user:9")

    @pytest.mark.asyncio
    async def test_ping(self, redis_client):
        assert await AuthStateCache(redis_client).ping() is True

        redis_client.ping.side_effect = RedisConnectionError("down")
        assert await AuthStateCache(redis_client).ping() is False

    @pytest.mark.asyncio
    async def test_disabled_cache(self, sample_state):
        cache = AuthStateCache(None)

        assert not cache.enabled
        assert await cache.get("admin", 5) is None
        await cache.set(sample_state)
        await cache.invalidate("admin", 5)
        assert await cache.ping() is False

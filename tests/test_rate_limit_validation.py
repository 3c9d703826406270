"""Tests for the token-bucket rate limiter in runtime.py and the Redis cache.

Invalid window_seconds should be logged and default to 60 seconds.
"""
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bloggerhub.service.runtime import Runtime, check_rate_limit, get_runtime
from bloggerhub.storage.redis_cache import RedisCache


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = threading.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True
        assert mock_runtime._local_rate_limits == {}

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("bloggerhub.service.runtime.logger") as mock_logger:
            result = await check_rate_limit(mock_runtime, "test_key", 10, 0)

            assert result is True
            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("bloggerhub.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_bucket_drains_to_limit(self, mock_runtime):
        for i in range(5):
            result = await check_rate_limit(mock_runtime, "test_key", 5, 60)
            assert result is True, f"Call {i+1} should pass"

        assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is False

    async def test_remaining_and_reset_reported(self, mock_runtime):
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "test_key", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)

        await check_rate_limit(mock_runtime, "test_key", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "test_key", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 30

    async def test_different_keys_independent(self, mock_runtime):
        for _ in range(3):
            await check_rate_limit(mock_runtime, "key1", 3, 60)

        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False

    async def test_bucket_refills_over_time(self, mock_runtime):
        for _ in range(2):
            await check_rate_limit(mock_runtime, "test_key", 2, 1)
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is False

        tokens, _ = mock_runtime._local_rate_limits["test_key"]
        backdated = datetime.now(timezone.utc) - timedelta(seconds=2)
        mock_runtime._local_rate_limits["test_key"] = (tokens, backdated)

        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is True

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        result = await check_rate_limit(mock_runtime_with_cache, "test_key", 10, 60)

        assert result is True
        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )


class TestRedisCache:
    @pytest.fixture
    def cache(self):
        cache = RedisCache.__new__(RedisCache)
        cache.redis_url = "redis://localhost:6379/0"
        cache._token_bucket = AsyncMock(return_value=[1, 4, 0])
        return cache

    def test_keys_are_hashed_and_prefixed(self):
        key = RedisCache._normalize_rate_key("login:alice")
        assert key.startswith("bloggerhub:rate:")
        assert "alice" not in key
        assert key == RedisCache._normalize_rate_key("login:alice")
        assert key != RedisCache._normalize_rate_key("login:bob")

    async def test_allowed_result(self, cache):
        allowed, remaining, reset = await cache.check_rate_limit(
            "login:alice", 5, 60, return_remaining=True
        )

        assert (allowed, remaining, reset) == (True, 4, 0)
        kwargs = cache._token_bucket.call_args.kwargs
        assert kwargs["keys"] == [RedisCache._normalize_rate_key("login:alice")]
        assert kwargs["args"][1:] == [5 / 60, 5, 1]

    async def test_denied_result(self, cache):
        cache._token_bucket = AsyncMock(return_value=[0, 0, 12])
        assert await cache.check_rate_limit("login:alice", 5, 60) is False


class TestRateLimitIntegration:
    """Rate limiting against the real in-process runtime."""

    async def test_rate_limit_with_memory_runtime(self):
        runtime = get_runtime()
        key = "signup:someone@example.com"

        for _ in range(5):
            assert await check_rate_limit(runtime, key, 5, 60) is True
        assert await check_rate_limit(runtime, key, 5, 60) is False

    async def test_concurrent_rate_limit_calls(self):
        runtime = get_runtime()
        results = []

        async def make_request():
            results.append(await check_rate_limit(runtime, "burst", 10, 60))

        await asyncio.gather(*[make_request() for _ in range(15)])

        assert results.count(True) == 10
        assert results.count(False) == 5

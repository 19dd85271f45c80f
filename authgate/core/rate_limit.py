"""
Fixed-window rate limiting.

Each checked request increments a counter keyed by ``<prefix>:<identity>``.
The first increment in a window sets the expiry; both happen in one atomic
step in the counter store so that concurrent first requests cannot reset
each other's window.

A limiter with no store, or a rule with a non-positive window or maximum,
lets everything through. A configured store that fails rejects the request
with ``rate_limit_unavailable``.
"""

import asyncio
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from fastapi import Request
from pydantic import BaseModel

from authgate.core.errors import AuthRejection, CounterStoreError, RejectReason
from authgate.utils.helpers import get_client_ip

logger = logging.getLogger(__name__)

KeyFunc = Callable[[Request], Awaitable[str]]

INCR_WITH_EXPIRE = """
local current = redis.call("INCR", KEYS[1])
if current == 1 then
    redis.call("EXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("TTL", KEYS[1])
return {current, ttl}
"""


class RateLimitRule(BaseModel):
    """A named limit applied to one or more routes."""
    prefix: str = ""
    window_seconds: int = 0
    max_requests: int = 0
    message_key: str = ""

    @property
    def configured(self) -> bool:
        return self.window_seconds > 0 and self.max_requests > 0


@dataclass(frozen=True)
class CounterResult:
    count: int
    ttl_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int = 0
    retry_after: int = 0


class CounterStore(ABC):
    """Atomic increment-with-expiry primitive."""

    @abstractmethod
    async def incr_window(self, key: str, window_seconds: int) -> CounterResult:
        """
        Increment ``key`` and start its window on the first hit.

        Raises:
            CounterStoreError: The store failed or returned an unusable reply
        """

    async def ping(self) -> bool:
        return True


def _to_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, (bytes, str)):
        try:
            return int(value)
        except ValueError:
            return None
    return None


class RedisCounterStore(CounterStore):
    """Counters in Redis, incremented by a single Lua script."""

    def __init__(self, client: redis.Redis):
        self._client = client
        self._script = client.register_script(INCR_WITH_EXPIRE)

    async def incr_window(self, key: str, window_seconds: int) -> CounterResult:
        try:
            result = await self._script(keys=[key], args=[window_seconds])
        except redis.RedisError as e:
            raise CounterStoreError(f"rate limit script failed: {e}") from e

        if not isinstance(result, (list, tuple)) or len(result) < 2:
            raise CounterStoreError(f"unexpected rate limit script reply: {result!r}")
        count = _to_int(result[0])
        if count is None:
            raise CounterStoreError(f"unexpected rate limit counter: {result[0]!r}")
        ttl = _to_int(result[1])
        return CounterResult(count=count, ttl_seconds=ttl if ttl is not None else -1)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Counter store ping failed: {e}")
            return False


class InMemoryCounterStore(CounterStore):
    """Process-local counters for single-instance deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    async def incr_window(self, key: str, window_seconds: int) -> CounterResult:
        now = self._clock()
        with self._lock:
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            if len(self._counters) > 10000:
                self._evict(now)
        return CounterResult(count=count, ttl_seconds=max(0, int(expires_at - now)))

    def _evict(self, now: float) -> None:
        for key in [k for k, (_, exp) in self._counters.items() if exp <= now]:
            del self._counters[key]


def retry_after_seconds(ttl_seconds: int, window_seconds: int) -> int:
    wait = ttl_seconds
    if wait < 1:
        wait = window_seconds
    return max(wait, 1)


class FixedWindowRateLimiter:
    """Applies RateLimitRules against a CounterStore."""

    def __init__(self, store: Optional[CounterStore], timeout_seconds: float = 0.5):
        self._store = store
        self.timeout_seconds = timeout_seconds

    @property
    def store(self) -> Optional[CounterStore]:
        return self._store

    def is_active(self, rule: RateLimitRule) -> bool:
        return self._store is not None and rule.configured

    async def ping(self) -> Optional[bool]:
        """Counter store health, bounded by the limiter timeout. None without a store."""
        if self._store is None:
            return None
        try:
            return await asyncio.wait_for(self._store.ping(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Counter store ping timed out")
            return False

    @staticmethod
    def build_key(rule: RateLimitRule, identity: str) -> str:
        if rule.prefix:
            return f"{rule.prefix}:{identity}"
        return identity

    async def hit(self, rule: RateLimitRule, identity: str) -> RateLimitDecision:
        """
        Count one request for ``identity`` under ``rule``.

        Raises:
            AuthRejection: ``rate_limited`` over the limit,
                ``rate_limit_unavailable`` when the store fails
        """
        if not self.is_active(rule):
            return RateLimitDecision(allowed=True)

        key = self.build_key(rule, identity)
        try:
            result = await asyncio.wait_for(
                self._store.incr_window(key, rule.window_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"Rate limit counter timed out for {rule.prefix or 'default'}")
            raise AuthRejection(RejectReason.RATE_LIMIT_UNAVAILABLE, "counter store timeout")
        except CounterStoreError as e:
            logger.error(f"Rate limit counter failed for {rule.prefix or 'default'}: {e}")
            raise AuthRejection(RejectReason.RATE_LIMIT_UNAVAILABLE, "counter store failure")

        if result.count > rule.max_requests:
            wait = retry_after_seconds(result.ttl_seconds, rule.window_seconds)
            logger.info(f"Rate limit exceeded for {key}: {result.count}/{rule.max_requests}")
            raise AuthRejection(
                RejectReason.RATE_LIMITED,
                retry_after=wait,
                message_key=rule.message_key.strip() or None,
            )

        return RateLimitDecision(allowed=True, count=result.count)

    def dependency(self, rule: RateLimitRule, key_func: Optional[KeyFunc] = None):
        """
        Build a FastAPI dependency enforcing ``rule``.

        Args:
            rule: Limit to apply
            key_func: Coroutine extracting the caller identity; the client IP
                when omitted or when it yields an empty string
        """
        async def enforce_rate_limit(request: Request) -> RateLimitDecision:
            identity = ""
            if key_func is not None:
                identity = (await key_func(request)).strip()
            if not identity:
                identity = get_client_ip(request)
            return await self.hit(rule, identity)

        return enforce_rate_limit


async def key_by_ip(request: Request) -> str:
    return get_client_ip(request)


def key_by_ip_and_json_field(field: str) -> KeyFunc:
    """
    Identity from a JSON body field combined with the client IP.

    The value is trimmed and lowercased, giving ``<value>|<ip>``. The body
    stays cached on the request, so the route handler can still read it.
    Falls back to the IP alone when the field is missing or not a string.
    """
    async def key_func(request: Request) -> str:
        ip = get_client_ip(request)
        value = await _read_json_field(request, field)
        value = value.strip().lower()
        if not value:
            return ip
        return f"{value}|{ip}"

    return key_func


async def _read_json_field(request: Request, field: str) -> str:
    body = await request.body()
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    value = payload.get(field)
    if isinstance(value, str):
        return value
    return ""

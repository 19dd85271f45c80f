"""
Auth-state cache.

A shared, TTL-bounded Redis mirror of the revocation-relevant part of a
principal record: credential version, session cutoff and the disabled and
super flags. Entries are JSON under ``<prefix>:auth:<kind>:<id>``.

The cache is never authoritative. A revoked credential can keep working
until the entry expires (``ttl_seconds``) or is invalidated explicitly; that
window is the price of keeping the identity store off the request path.

With no Redis client configured every read is a miss and writes are no-ops.
"""

import asyncio
import logging
import time
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from authgate.core.errors import CacheError
from authgate.core.identity import PrincipalRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600


class AuthState(BaseModel):
    """Cached snapshot of a principal."""
    principal_id: int
    principal_kind: str
    credential_version: int
    invalid_before_unix: int = 0
    disabled: bool = False
    is_super: bool = False
    updated_at_unix: int = 0

    @classmethod
    def from_record(cls, record: PrincipalRecord) -> "AuthState":
        return cls(
            principal_id=record.id,
            principal_kind=record.kind,
            credential_version=record.credential_version,
            invalid_before_unix=record.invalid_before or 0,
            disabled=record.disabled,
            is_super=record.is_super,
            updated_at_unix=int(time.time()),
        )


class AuthStateCache:
    """Redis-backed auth-state cache with per-call timeouts."""

    def __init__(
        self,
        client: Optional[redis.Redis],
        prefix: str = "",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = 0.5,
    ):
        self._client = client
        self._prefix = prefix.strip().strip(":")
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def key(self, kind: str, principal_id: int) -> str:
        key = f"auth:{kind}:{principal_id}"
        if self._prefix:
            return f"{self._prefix}:{key}"
        return key

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise CacheError(f"auth cache {operation} timed out") from e
        except redis.RedisError as e:
            raise CacheError(f"auth cache {operation} failed: {e}") from e

    async def get(self, kind: str, principal_id: int) -> Optional[AuthState]:
        """
        Read a snapshot.

        Returns:
            The cached state, or None on a miss

        Raises:
            CacheError: Redis failed, timed out or held an unreadable value
        """
        if not self.enabled:
            return None

        raw = await self._call("get", self._client.get(self.key(kind, principal_id)))
        if raw is None:
            return None

        try:
            return AuthState.model_validate_json(raw)
        except ValidationError as e:
            raise CacheError(f"auth cache entry for {kind}:{principal_id} is corrupt") from e

    async def set(self, state: AuthState) -> None:
        if not self.enabled:
            return
        key = self.key(state.principal_kind, state.principal_id)
        await self._call("set", self._client.set(key, state.model_dump_json(), ex=self.ttl_seconds))

    async def invalidate(self, kind: str, principal_id: int) -> None:
        if not self.enabled:
            return
        await self._call("delete", self._client.delete(self.key(kind, principal_id)))

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            await self._call("ping", self._client.ping())
            return True
        except CacheError as e:
            logger.warning(f"Auth cache ping failed: {e}")
            return False

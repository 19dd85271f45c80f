"""
Token validation and issuance.

Validation runs a fixed sequence per request:
1. The signing secret must be configured (``jwt_secret_missing``)
2. An Authorization header must be present (``auth_header_missing``)
3. It must read exactly ``Bearer <token>`` (``auth_header_invalid``)
4. The token must be HS256-signed, unexpired and name a principal of the
   expected kind (``token_invalid``)
5. The principal's auth state, from the cache or the identity store, must
   accept the token's credential version and issue time
   (``token_revoked``, ``user_disabled``, ``token_invalid``)

Step 5 goes through ``resolve_auth_state``, which reports where the state
came from so that the acceptance check is written once for both sources.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from starlette.concurrency import run_in_threadpool

from authgate.core.auth_state import AuthState, AuthStateCache
from authgate.core.errors import (
    AuthRejection,
    CacheError,
    IdentityStoreError,
    PrincipalNotFound,
    RejectReason,
)
from authgate.core.identity import IdentityStore, PrincipalRecord

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    """Claims the gateway relies on."""
    principal_id: int
    kind: str
    credential_version: int
    issued_at: Optional[int]
    username: str = ""


class AuthStateSource(str, Enum):
    CACHE = "cache"
    STORE = "store"


@dataclass(frozen=True)
class ResolvedAuthState:
    """Auth state tagged with the place it was read from."""
    state: AuthState
    source: AuthStateSource


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """Identity established for a request."""
    id: int
    kind: str
    username: str
    is_super: bool
    source: AuthStateSource

    @property
    def subject(self) -> str:
        return f"{self.kind}:{self.id}"


def check_auth_state(claims: TokenClaims, state: AuthState) -> None:
    """
    Accept or reject a token against a principal's auth state.

    Raises:
        AuthRejection: ``user_disabled`` for disabled principals,
            ``token_revoked`` when the credential version differs or the
            token predates the session cutoff
    """
    if state.disabled:
        raise AuthRejection(RejectReason.USER_DISABLED)
    if claims.credential_version != state.credential_version:
        raise AuthRejection(RejectReason.TOKEN_REVOKED, "credential version mismatch")
    if state.invalid_before_unix > 0:
        if claims.issued_at is None or claims.issued_at < state.invalid_before_unix:
            raise AuthRejection(RejectReason.TOKEN_REVOKED, "token issued before session cutoff")


def _int_claim(payload: Dict[str, Any], name: str) -> Optional[int]:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class TokenValidator:
    """Validates bearer tokens for one principal kind."""

    def __init__(
        self,
        secret: str,
        kind: str,
        cache: AuthStateCache,
        identity_store: IdentityStore,
        store_timeout_seconds: float = 2.0,
        issuer: Optional[str] = None,
    ):
        self._secret = secret
        self.kind = kind
        self._cache = cache
        self._identity_store = identity_store
        self._store_timeout = store_timeout_seconds
        self._issuer = issuer

    def parse_authorization(self, authorization: Optional[str]) -> TokenClaims:
        """Run the header and signature checks and extract claims."""
        if not self._secret:
            raise AuthRejection(RejectReason.JWT_SECRET_MISSING)
        if not authorization:
            raise AuthRejection(RejectReason.AUTH_HEADER_MISSING)

        parts = authorization.split(" ", 1)
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            raise AuthRejection(RejectReason.AUTH_HEADER_INVALID)

        return self.decode(parts[1])

    def decode(self, token: str) -> TokenClaims:
        options = {"require": ["exp"]}
        kwargs = {}
        if self._issuer:
            options["require"].append("iss")
            kwargs["issuer"] = self._issuer
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options=options,
                **kwargs,
            )
        except jwt.ExpiredSignatureError:
            raise AuthRejection(RejectReason.TOKEN_INVALID, "token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"JWT validation failed: {e}")
            raise AuthRejection(RejectReason.TOKEN_INVALID, "token rejected")

        principal_id = _int_claim(payload, "principal_id")
        if not principal_id or principal_id <= 0:
            raise AuthRejection(RejectReason.TOKEN_INVALID, "principal id missing")
        if payload.get("kind") != self.kind:
            raise AuthRejection(RejectReason.TOKEN_INVALID, "token issued for another principal kind")

        return TokenClaims(
            principal_id=principal_id,
            kind=self.kind,
            credential_version=_int_claim(payload, "token_version") or 0,
            issued_at=_int_claim(payload, "iat"),
            username=str(payload.get("username") or ""),
        )

    async def resolve_auth_state(self, claims: TokenClaims) -> ResolvedAuthState:
        """
        Find the auth state for a principal.

        The cache is tried first; a miss or any cache failure falls back to
        the identity store. Cache failures never reject the request.

        Raises:
            AuthRejection: ``token_invalid`` when the principal is unknown or
                the identity store cannot answer in time
        """
        try:
            cached = await self._cache.get(self.kind, claims.principal_id)
        except CacheError as e:
            logger.warning(f"Auth cache read failed for {self.kind}:{claims.principal_id}: {e}")
            cached = None

        if cached is not None:
            return ResolvedAuthState(cached, AuthStateSource.CACHE)

        record = await self._load_record(claims.principal_id)
        return ResolvedAuthState(AuthState.from_record(record), AuthStateSource.STORE)

    async def _load_record(self, principal_id: int) -> PrincipalRecord:
        try:
            return await asyncio.wait_for(
                run_in_threadpool(self._identity_store.get_principal_by_id, self.kind, principal_id),
                timeout=self._store_timeout,
            )
        except PrincipalNotFound:
            raise AuthRejection(RejectReason.TOKEN_INVALID, "principal not found")
        except asyncio.TimeoutError:
            logger.error(f"Identity store lookup timed out for {self.kind}:{principal_id}")
            raise AuthRejection(RejectReason.TOKEN_INVALID, "identity store timeout")
        except IdentityStoreError as e:
            logger.error(f"Identity store lookup failed for {self.kind}:{principal_id}: {e}")
            raise AuthRejection(RejectReason.TOKEN_INVALID, "identity store unavailable")

    async def _populate_cache(self, state: AuthState) -> None:
        try:
            await self._cache.set(state)
        except CacheError as e:
            logger.warning(
                f"Auth cache populate failed for {state.principal_kind}:{state.principal_id}: {e}"
            )

    async def authenticate(self, authorization: Optional[str]) -> AuthenticatedPrincipal:
        """Validate an Authorization header end to end."""
        claims = self.parse_authorization(authorization)
        resolved = await self.resolve_auth_state(claims)
        check_auth_state(claims, resolved.state)

        if resolved.source is AuthStateSource.STORE:
            await self._populate_cache(resolved.state)

        return AuthenticatedPrincipal(
            id=claims.principal_id,
            kind=self.kind,
            username=claims.username,
            is_super=resolved.state.is_super,
            source=resolved.source,
        )


class TokenIssuer:
    """Mints access tokens carrying the principal's current credential version."""

    def __init__(self, secret: str, expire_minutes: int = 120, issuer: Optional[str] = None):
        self._secret = secret
        self.expire_minutes = expire_minutes
        self._issuer = issuer

    def issue(self, record: PrincipalRecord, expires_delta: Optional[timedelta] = None) -> str:
        if not self._secret:
            raise AuthRejection(RejectReason.JWT_SECRET_MISSING)

        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.expire_minutes))
        payload = {
            "principal_id": record.id,
            "kind": record.kind,
            "username": record.username,
            "token_version": record.credential_version,
            "iat": now,
            "exp": expire,
        }
        if self._issuer:
            payload["iss"] = self._issuer
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)


class SessionRevoker:
    """
    Revocation write path.

    Every operation updates the identity store first. The cached snapshot is
    then dropped best-effort so that the change usually takes effect
    immediately; if that fails, the entry still expires with the cache TTL.
    """

    def __init__(self, identity_store: IdentityStore, cache: AuthStateCache):
        self._identity_store = identity_store
        self._cache = cache

    async def _drop_cached(self, kind: str, principal_id: int) -> None:
        try:
            await self._cache.invalidate(kind, principal_id)
        except CacheError as e:
            logger.warning(f"Auth cache invalidation failed for {kind}:{principal_id}: {e}")

    async def revoke_all(self, kind: str, principal_id: int) -> PrincipalRecord:
        """Invalidate every token issued so far (logout everywhere)."""
        record = await run_in_threadpool(
            self._identity_store.bump_credential_version, kind, principal_id
        )
        await self._drop_cached(kind, principal_id)
        return record

    async def revoke_before(self, kind: str, principal_id: int, cutoff: Optional[int] = None) -> PrincipalRecord:
        cutoff = int(time.time()) if cutoff is None else cutoff
        record = await run_in_threadpool(
            self._identity_store.invalidate_sessions_before, kind, principal_id, cutoff
        )
        await self._drop_cached(kind, principal_id)
        return record

    async def set_disabled(self, kind: str, principal_id: int, disabled: bool) -> PrincipalRecord:
        record = await run_in_threadpool(
            self._identity_store.set_disabled, kind, principal_id, disabled
        )
        await self._drop_cached(kind, principal_id)
        return record

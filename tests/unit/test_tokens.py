"""Unit tests for token validation, issuance and session revocation."""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest

from authgate.core.auth_state import AuthState, AuthStateCache
from authgate.core.errors import AuthRejection, CacheError, IdentityStoreError, RejectReason
from authgate.core.identity import InMemoryIdentityStore, PrincipalRecord
from authgate.core.tokens import (
    ALGORITHM,
    AuthStateSource,
    SessionRevoker,
    TokenClaims,
    TokenIssuer,
    TokenValidator,
    check_auth_state,
)
from tests.fixtures import ADMIN_ID, TEST_SECRET, USER_ID


def _rejection_reason(excinfo) -> RejectReason:
    return excinfo.value.reason


@pytest.fixture
def disabled_cache():
    return AuthStateCache(None)


@pytest.fixture
def admin_validator(identity_store, disabled_cache):
    return TokenValidator(TEST_SECRET, "admin", disabled_cache, identity_store)


@pytest.fixture
def issuer():
    return TokenIssuer(TEST_SECRET, expire_minutes=30)


def _bearer(token: str) -> str:
    return f"Bearer {token}"


class TestHeaderChecks:
    """Rejections raised before the token is decoded."""

    def test_secret_missing(self, identity_store, disabled_cache):
        validator = TokenValidator("", "admin", disabled_cache, identity_store)

        with pytest.raises(AuthRejection) as excinfo:
            validator.parse_authorization("Bearer abc")
        assert _rejection_reason(excinfo) is RejectReason.JWT_SECRET_MISSING

    @pytest.mark.parametrize("header", [None, ""])
    def test_header_missing(self, admin_validator, header):
        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.parse_authorization(header)
        assert _rejection_reason(excinfo) is RejectReason.AUTH_HEADER_MISSING

    @pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer ", "bearer abc", "abc"])
    def test_header_invalid(self, admin_validator, header):
        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.parse_authorization(header)
        assert _rejection_reason(excinfo) is RejectReason.AUTH_HEADER_INVALID


class TestDecode:
    """Signature, expiry and claim checks."""

    def test_valid_token(self, admin_validator, issuer, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)

        claims = admin_validator.decode(issuer.issue(record))

        assert claims.principal_id == ADMIN_ID
        assert claims.kind == "admin"
        assert claims.credential_version == record.credential_version
        assert claims.username == "alice"
        assert claims.issued_at is not None

    def test_wrong_signature(self, admin_validator, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        token = TokenIssuer("another-secret-entirely-different-value").issue(record)

        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.decode(token)
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    def test_expired_token(self, admin_validator, issuer, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        token = issuer.issue(record, expires_delta=timedelta(seconds=-30))

        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.decode(token)
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    def test_exp_is_required(self, admin_validator):
        token = jwt.encode({"principal_id": ADMIN_ID, "kind": "admin", "token_version": 1},
                           TEST_SECRET, algorithm=ALGORITHM)

        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.decode(token)
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    def test_other_algorithms_rejected(self, admin_validator):
        token = jwt.encode({"principal_id": ADMIN_ID, "kind": "admin", "exp": 9999999999},
                           TEST_SECRET, algorithm="HS512")

        with pytest.raises(AuthRejection):
            admin_validator.decode(token)

    def test_kind_mismatch(self, admin_validator, issuer, identity_store):
        user = identity_store.get_principal_by_id("user", USER_ID)

        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.decode(issuer.issue(user))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    @pytest.mark.parametrize("principal_id", [0, -4, "7", None])
    def test_bad_principal_id(self, admin_validator, principal_id):
        token = jwt.encode({"principal_id": principal_id, "kind": "admin", "exp": 9999999999},
                           TEST_SECRET, algorithm=ALGORITHM)

        with pytest.raises(AuthRejection) as excinfo:
            admin_validator.decode(token)
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    def test_issuer_enforced(self, identity_store, disabled_cache):
        validator = TokenValidator(TEST_SECRET, "admin", disabled_cache, identity_store, issuer="authgate")
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)

        with pytest.raises(AuthRejection):
            validator.decode(TokenIssuer(TEST_SECRET).issue(record))

        claims = validator.decode(TokenIssuer(TEST_SECRET, issuer="authgate").issue(record))
        assert claims.principal_id == ADMIN_ID


class TestCheckAuthState:
    """The acceptance rule shared by cache and store states."""

    def _state(self, **overrides) -> AuthState:
        values = dict(principal_id=1, principal_kind="admin", credential_version=3)
        values.update(overrides)
        return AuthState(**values)

    def _claims(self, **overrides) -> TokenClaims:
        values = dict(principal_id=1, kind="admin", credential_version=3, issued_at=1000)
        values.update(overrides)
        return TokenClaims(**values)

    def test_accepts_matching_version(self):
        check_auth_state(self._claims(), self._state())

    def test_version_mismatch_is_revoked(self):
        with pytest.raises(AuthRejection) as excinfo:
            check_auth_state(self._claims(credential_version=2), self._state())
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

    def test_disabled_wins(self):
        with pytest.raises(AuthRejection) as excinfo:
            check_auth_state(self._claims(credential_version=2), self._state(disabled=True))
        assert _rejection_reason(excinfo) is RejectReason.USER_DISABLED

    def test_issued_before_cutoff(self):
        with pytest.raises(AuthRejection) as excinfo:
            check_auth_state(self._claims(issued_at=999), self._state(invalid_before_unix=1000))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

    def test_issued_at_cutoff_is_accepted(self):
        check_auth_state(self._claims(issued_at=1000), self._state(invalid_before_unix=1000))

    def test_missing_iat_with_cutoff(self):
        with pytest.raises(AuthRejection) as excinfo:
            check_auth_state(self._claims(issued_at=None), self._state(invalid_before_unix=1))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

    def test_missing_iat_without_cutoff(self):
        check_auth_state(self._claims(issued_at=None), self._state())


class TestAuthenticate:
    """End-to-end validation against cache and identity store."""

    @pytest.mark.asyncio
    async def test_store_path_populates_cache(self, identity_store, issuer):
        cache = MagicMock(spec=AuthStateCache)
        cache.get = AsyncMock(return_value=None)
        cache.set = AsyncMock()
        validator = TokenValidator(TEST_SECRET, "admin", cache, identity_store)
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)

        principal = await validator.authenticate(_bearer(issuer.issue(record)))

        assert principal.id == ADMIN_ID
        assert principal.subject == "admin:2"
        assert principal.source is AuthStateSource.STORE
        assert not principal.is_super
        cache.set.assert_awaited_once()
        stored = cache.set.await_args.args[0]
        assert stored.principal_id == ADMIN_ID
        assert stored.credential_version == record.credential_version

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, issuer, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        cache = MagicMock(spec=AuthStateCache)
        cache.get = AsyncMock(return_value=AuthState.from_record(record))
        cache.set = AsyncMock()
        store = MagicMock(spec=InMemoryIdentityStore)
        validator = TokenValidator(TEST_SECRET, "admin", cache, store)

        principal = await validator.authenticate(_bearer(issuer.issue(record)))

        assert principal.source is AuthStateSource.CACHE
        store.get_principal_by_id.assert_not_called()
        cache.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_store(self, identity_store, issuer):
        cache = MagicMock(spec=AuthStateCache)
        cache.get = AsyncMock(side_effect=CacheError("redis down"))
        cache.set = AsyncMock(side_effect=CacheError("redis down"))
        validator = TokenValidator(TEST_SECRET, "admin", cache, identity_store)
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)

        principal = await validator.authenticate(_bearer(issuer.issue(record)))

        assert principal.source is AuthStateSource.STORE

    @pytest.mark.asyncio
    async def test_stale_cache_rejects_revoked_token(self, issuer, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        token = issuer.issue(record)
        bumped = replace(record, credential_version=record.credential_version + 1)
        cache = MagicMock(spec=AuthStateCache)
        cache.get = AsyncMock(return_value=AuthState.from_record(bumped))
        validator = TokenValidator(TEST_SECRET, "admin", cache, identity_store)

        with pytest.raises(AuthRejection) as excinfo:
            await validator.authenticate(_bearer(token))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

    @pytest.mark.asyncio
    async def test_unknown_principal(self, admin_validator, issuer):
        ghost = PrincipalRecord(id=999, kind="admin", username="ghost")

        with pytest.raises(AuthRejection) as excinfo:
            await admin_validator.authenticate(_bearer(issuer.issue(ghost)))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_identity_store_failure(self, disabled_cache, issuer, identity_store):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        store = MagicMock(spec=InMemoryIdentityStore)
        store.get_principal_by_id.side_effect = IdentityStoreError("database down")
        validator = TokenValidator(TEST_SECRET, "admin", disabled_cache, store)

        with pytest.raises(AuthRejection) as excinfo:
            await validator.authenticate(_bearer(issuer.issue(record)))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_disabled_user_rejected(self, identity_store, disabled_cache, issuer):
        validator = TokenValidator(TEST_SECRET, "user", disabled_cache, identity_store)
        token = issuer.issue(identity_store.get_principal_by_id("user", USER_ID))
        identity_store.set_disabled("user", USER_ID, True)

        with pytest.raises(AuthRejection) as excinfo:
            await validator.authenticate(_bearer(token))
        assert _rejection_reason(excinfo) is RejectReason.USER_DISABLED


class TestSessionRevoker:
    """Revocation writes and cache invalidation."""

    @pytest.mark.asyncio
    async def test_revoke_all_rejects_old_tokens(self, identity_store, disabled_cache, issuer, admin_validator):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        old_token = issuer.issue(record)
        revoker = SessionRevoker(identity_store, disabled_cache)

        updated = await revoker.revoke_all("admin", ADMIN_ID)

        assert updated.credential_version == record.credential_version + 1
        with pytest.raises(AuthRejection) as excinfo:
            await admin_validator.authenticate(_bearer(old_token))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

        fresh = await admin_validator.authenticate(_bearer(issuer.issue(updated)))
        assert fresh.id == ADMIN_ID

    @pytest.mark.asyncio
    async def test_revoke_before_cutoff(self, identity_store, disabled_cache, admin_validator):
        record = identity_store.get_principal_by_id("admin", ADMIN_ID)
        token = jwt.encode(
            {"principal_id": ADMIN_ID, "kind": "admin", "token_version": record.credential_version,
             "iat": 1000, "exp": 9999999999},
            TEST_SECRET, algorithm=ALGORITHM,
        )
        revoker = SessionRevoker(identity_store, disabled_cache)

        await revoker.revoke_before("admin", ADMIN_ID, cutoff=2000)

        with pytest.raises(AuthRejection) as excinfo:
            await admin_validator.authenticate(_bearer(token))
        assert _rejection_reason(excinfo) is RejectReason.TOKEN_REVOKED

    @pytest.mark.asyncio
    async def test_invalidation_failure_is_tolerated(self, identity_store):
        cache = MagicMock(spec=AuthStateCache)
        cache.invalidate = AsyncMock(side_effect=CacheError("redis down"))
        revoker = SessionRevoker(identity_store, cache)

        record = await revoker.set_disabled("admin", ADMIN_ID, True)

        assert record.disabled
        cache.invalidate.assert_awaited_once_with("admin", ADMIN_ID)

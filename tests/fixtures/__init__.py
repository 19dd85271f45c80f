"""Test fixtures for gateway tests."""

from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from authgate.config import GatewayConfig
from authgate.config.settings import GatewaySettings
from authgate.core.audit import AuthzAuditStore
from authgate.core.database import build_engine
from authgate.core.identity import (
    InMemoryIdentityStore,
    PrincipalRecord,
    SQLIdentityStore,
    hash_password,
)
from authgate.core.normalize import ADMIN_KIND, USER_KIND
from authgate.core.policy_engine import PolicyEngine
from authgate.core.policy_store import InMemoryPolicyStore, SQLPolicyStore
from authgate.core.rate_limit import InMemoryCounterStore, RateLimitRule
from authgate.core.rbac import RoleRegistry
from authgate.core.tokens import TokenIssuer
from authgate.main import create_app
from authgate.provider import assemble_container

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_PASSWORD = "correct-horse-battery"

SUPER_ADMIN_ID = 1
ADMIN_ID = 2
USER_ID = 10


def sample_principals():
    """Super admin, regular admin and an end user sharing one password."""
    password_hash = hash_password(TEST_PASSWORD)
    return [
        PrincipalRecord(id=SUPER_ADMIN_ID, kind=ADMIN_KIND, username="root",
                        is_super=True, password_hash=password_hash),
        PrincipalRecord(id=ADMIN_ID, kind=ADMIN_KIND, username="alice",
                        password_hash=password_hash),
        PrincipalRecord(id=USER_ID, kind=USER_KIND, username="bob",
                        password_hash=password_hash),
    ]


@pytest.fixture
def policy_store():
    return InMemoryPolicyStore()


@pytest.fixture
def policy_engine(policy_store):
    engine = PolicyEngine(policy_store)
    engine.load()
    return engine


@pytest.fixture
def role_registry(policy_engine):
    return RoleRegistry(policy_engine)


@pytest.fixture
def identity_store():
    store = InMemoryIdentityStore()
    for record in sample_principals():
        store.create_principal(record)
    return store


@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file."""
    return GatewaySettings(
        _env_file=None,
        jwt_secret_key=TEST_SECRET,
        database_url="sqlite://",
        redis_url=None,
        bootstrap_builtin_roles=True,
        enable_audit_logging=True,
    )


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        rate_limits={
            "admin_login": RateLimitRule(
                prefix="rl:admin_login", window_seconds=60, max_requests=3,
                message_key="error.login_rate_limited",
            ),
            "user_login": RateLimitRule(
                prefix="rl:user_login", window_seconds=60, max_requests=3,
                message_key="error.login_rate_limited",
            ),
            "logout_all": RateLimitRule(prefix="rl:logout_all", window_seconds=60, max_requests=5),
        }
    )


@pytest.fixture
def counter_store():
    return InMemoryCounterStore()


@pytest.fixture
def gateway_container(test_settings, gateway_config, counter_store):
    """Container on an in-memory SQLite database with in-process counters."""
    db_engine = build_engine("sqlite://")
    identity_store = SQLIdentityStore(db_engine)
    identity_store.ensure_schema()
    for record in sample_principals():
        identity_store.create_principal(record)

    container = assemble_container(
        settings=test_settings,
        config=gateway_config,
        policy_store=SQLPolicyStore(db_engine),
        identity_store=identity_store,
        counter_store=counter_store,
        audit_store=AuthzAuditStore(db_engine),
        db_engine=db_engine,
    )
    yield container
    db_engine.dispose()


@pytest.fixture
def test_app(gateway_container):
    return create_app(container=gateway_container, configure_logging=False)


@pytest.fixture
def test_client(test_app):
    """Test client with the application lifespan running."""
    with TestClient(test_app) as client:
        yield client


@pytest.fixture
def token_issuer():
    return TokenIssuer(TEST_SECRET)


@pytest.fixture
def issue_token(gateway_container) -> Callable[..., str]:
    """Issue a token for a stored principal at its current credential version."""
    def _issue(kind: str, principal_id: int, **overrides) -> str:
        record = gateway_container.identity_store.get_principal_by_id(kind, principal_id)
        return gateway_container.issuer.issue(record, **overrides)

    return _issue


@pytest.fixture
def auth_headers(issue_token) -> Callable[..., dict]:
    def _headers(kind: str = ADMIN_KIND, principal_id: Optional[int] = None) -> dict:
        if principal_id is None:
            principal_id = SUPER_ADMIN_ID if kind == ADMIN_KIND else USER_ID
        return {"Authorization": f"Bearer {issue_token(kind, principal_id)}"}

    return _headers

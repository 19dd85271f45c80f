"""
Component container.

Every gateway component is constructed here from settings and handed to its
users explicitly. The FastAPI application keeps the container on
``app.state.container``; tests build their own containers with in-memory
collaborators.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis
from sqlalchemy.engine import Engine

from authgate.config import GatewayConfig
from authgate.config.settings import GatewaySettings
from authgate.core.audit import AuthzAuditStore
from authgate.core.auth_state import AuthStateCache
from authgate.core.database import build_engine
from authgate.core.identity import IdentityStore, SQLIdentityStore
from authgate.core.normalize import ADMIN_KIND, USER_KIND
from authgate.core.policy_engine import PolicyEngine
from authgate.core.policy_store import PolicyStore, SQLPolicyStore
from authgate.core.rate_limit import (
    CounterStore,
    FixedWindowRateLimiter,
    InMemoryCounterStore,
    RedisCounterStore,
)
from authgate.core.rbac import RoleRegistry
from authgate.core.tokens import SessionRevoker, TokenIssuer, TokenValidator
from authgate.gateway import AccessGateway
from authgate.middleware.audit import SecurityAuditLogger

logger = logging.getLogger(__name__)


@dataclass
class GatewayContainer:
    """Wired gateway components."""
    settings: GatewaySettings
    config: GatewayConfig
    policy_store: PolicyStore
    policy_engine: PolicyEngine
    registry: RoleRegistry
    identity_store: IdentityStore
    auth_cache: AuthStateCache
    validators: Dict[str, TokenValidator]
    gateway: AccessGateway
    issuer: TokenIssuer
    revoker: SessionRevoker
    rate_limiter: FixedWindowRateLimiter
    audit: SecurityAuditLogger
    audit_store: Optional[AuthzAuditStore] = None
    db_engine: Optional[Engine] = None
    redis_client: Optional[redis.Redis] = None

    def ensure_schema(self) -> None:
        self.policy_store.ensure_schema()
        self.identity_store.ensure_schema()
        if self.audit_store is not None:
            self.audit_store.ensure_schema()

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.db_engine is not None:
            self.db_engine.dispose()


def build_redis_client(settings: GatewaySettings) -> Optional[redis.Redis]:
    if not settings.redis_url:
        return None
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )


def assemble_container(
    settings: GatewaySettings,
    config: GatewayConfig,
    policy_store: PolicyStore,
    identity_store: IdentityStore,
    redis_client: Optional[redis.Redis] = None,
    counter_store: Optional[CounterStore] = None,
    audit_store: Optional[AuthzAuditStore] = None,
    db_engine: Optional[Engine] = None,
) -> GatewayContainer:
    """Wire components around already constructed stores."""
    policy_engine = PolicyEngine(policy_store)
    registry = RoleRegistry(policy_engine)

    auth_cache = AuthStateCache(
        redis_client,
        prefix=settings.redis_key_prefix,
        ttl_seconds=settings.auth_state_ttl_seconds,
        timeout_seconds=settings.cache_timeout_seconds,
    )
    validators = {
        kind: TokenValidator(
            secret=settings.jwt_secret_key,
            kind=kind,
            cache=auth_cache,
            identity_store=identity_store,
            store_timeout_seconds=settings.identity_timeout_seconds,
            issuer=settings.token_issuer,
        )
        for kind in (ADMIN_KIND, USER_KIND)
    }

    if counter_store is None and redis_client is not None:
        counter_store = RedisCounterStore(redis_client)

    return GatewayContainer(
        settings=settings,
        config=config,
        policy_store=policy_store,
        policy_engine=policy_engine,
        registry=registry,
        identity_store=identity_store,
        auth_cache=auth_cache,
        validators=validators,
        gateway=AccessGateway(validators, registry),
        issuer=TokenIssuer(
            settings.jwt_secret_key,
            expire_minutes=settings.access_token_expire_minutes,
            issuer=settings.token_issuer,
        ),
        revoker=SessionRevoker(identity_store, auth_cache),
        rate_limiter=FixedWindowRateLimiter(counter_store, timeout_seconds=settings.counter_timeout_seconds),
        audit=SecurityAuditLogger(audit_store, enabled=settings.enable_audit_logging),
        audit_store=audit_store,
        db_engine=db_engine,
        redis_client=redis_client,
    )


def build_container(settings: GatewaySettings, config: GatewayConfig) -> GatewayContainer:
    """Build the production container from settings."""
    db_engine = build_engine(settings.database_url, echo=settings.database_echo)
    redis_client = build_redis_client(settings)

    counter_store = None
    if redis_client is None and settings.use_memory_counters:
        counter_store = InMemoryCounterStore()

    logger.info(
        f"Building gateway container (redis={'on' if redis_client else 'off'}, "
        f"policy_table={settings.policy_table})"
    )
    return assemble_container(
        settings=settings,
        config=config,
        policy_store=SQLPolicyStore(db_engine, settings.policy_table),
        identity_store=SQLIdentityStore(db_engine, settings.principal_table),
        redis_client=redis_client,
        counter_store=counter_store,
        audit_store=AuthzAuditStore(db_engine, settings.audit_table),
        db_engine=db_engine,
    )

"""
Main FastAPI application entry point.

This module builds the gateway application: settings and YAML
configuration, the component container, the gateway middleware for the
admin and user prefixes and the API routers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from authgate import __version__
from authgate.api.v1.router import api_router
from authgate.config import GatewayConfig, get_config
from authgate.config.logging import setup_logging
from authgate.config.settings import GatewaySettings, get_settings, validate_jwt_config
from authgate.core.bootstrap import bootstrap_builtin_roles
from authgate.core.errors import AuthGatewayError, AuthRejection, PrincipalNotFound
from authgate.core.identity import PrincipalRecord, hash_password
from authgate.core.normalize import ADMIN_KIND, USER_KIND
from authgate.middleware import GatewayAuthMiddleware, RequestContextMiddleware
from authgate.middleware.responses import auth_rejection_handler, gateway_error_handler
from authgate.provider import GatewayContainer, build_container

logger = logging.getLogger(__name__)


def ensure_super_admin(container: GatewayContainer) -> Optional[PrincipalRecord]:
    """Create the configured super admin unless an admin with that name exists."""
    settings = container.settings
    if not settings.super_admin_username or not settings.super_admin_password:
        return None

    store = container.identity_store
    try:
        return store.get_principal_by_username(ADMIN_KIND, settings.super_admin_username)
    except PrincipalNotFound:
        pass

    next_id = max((a.id for a in store.list_principals(ADMIN_KIND)), default=0) + 1
    record = store.create_principal(PrincipalRecord(
        id=next_id,
        kind=ADMIN_KIND,
        username=settings.super_admin_username,
        is_super=True,
        password_hash=hash_password(settings.super_admin_password),
    ))
    logger.info(f"Created super admin {record.username} with id {record.id}")
    return record


def initialize_container(container: GatewayContainer) -> None:
    """Create tables, load the rule set and seed built-in roles."""
    container.ensure_schema()
    container.policy_engine.load()
    if container.settings.bootstrap_builtin_roles:
        bootstrap_builtin_roles(container.registry)
    ensure_super_admin(container)

    stats = container.policy_engine.stats()
    logger.info(
        f"Policy engine ready with {stats['roles']} roles, "
        f"{stats['policies']} rules and {stats['groupings']} groupings"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    container: GatewayContainer = app.state.container
    settings = container.settings

    if app.state.configure_logging:
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            log_file=settings.log_file,
            enable_access_log=container.config.server.access_log,
            audit_log_level=settings.audit_log_level,
        )

    if validate_jwt_config(settings):
        logger.warning("Gateway configuration has issues - please review for production use")

    await run_in_threadpool(initialize_container, container)

    yield

    await container.close()


def create_app(
    settings: Optional[GatewaySettings] = None,
    config: Optional[GatewayConfig] = None,
    container: Optional[GatewayContainer] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Runtime settings, read from the environment by default
        config: YAML configuration, loaded from the config directory by default
        container: Pre-wired components; built from settings when omitted
        configure_logging: Apply the logging configuration at startup
    """
    if container is None:
        container = build_container(settings or get_settings(), config or get_config())
    settings = container.settings

    app = FastAPI(
        title="Auth Gateway",
        description="Authentication, RBAC and rate limiting for the admin and user APIs",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.container = container
    app.state.configure_logging = configure_logging

    app.add_exception_handler(AuthRejection, auth_rejection_handler)
    app.add_exception_handler(AuthGatewayError, gateway_error_handler)

    # Middleware added last runs first
    app.add_middleware(GatewayAuthMiddleware, path_prefix=settings.admin_path_prefix, kind=ADMIN_KIND)
    app.add_middleware(
        GatewayAuthMiddleware,
        path_prefix=settings.user_path_prefix,
        kind=USER_KIND,
        enforce_rbac=False,
    )
    app.add_middleware(RequestContextMiddleware, access_log=container.config.server.access_log)

    cors = container.config.cors
    if cors.enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors.allow_origins,
            allow_methods=cors.allow_methods,
            allow_headers=cors.allow_headers,
        )

    app.include_router(api_router)
    return app


if __name__ == "__main__":
    import uvicorn

    server = get_config().server
    uvicorn.run(
        "authgate.main:create_app",
        factory=True,
        host=server.host,
        port=server.port,
        workers=server.workers,
        log_level=server.log_level,
        access_log=server.access_log,
    )

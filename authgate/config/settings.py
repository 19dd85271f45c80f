"""
Gateway settings.

Settings come from environment variables prefixed with ``AUTHGATE_`` and an
optional ``.env`` file. An empty JWT secret is accepted on purpose: the
gateway then rejects every protected request with ``jwt_secret_missing``
instead of refusing to start.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32


class GatewaySettings(BaseSettings):
    """Runtime settings for the gateway."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Tokens
    jwt_secret_key: str = Field(default="", description="HS256 signing secret")
    access_token_expire_minutes: int = Field(default=120, description="Access token lifetime")
    token_issuer: Optional[str] = Field(default=None, description="Required iss claim, if set")

    # Persistence
    database_url: str = Field(default="sqlite:///./authgate.db", description="SQLAlchemy URL")
    database_echo: bool = Field(default=False)
    policy_table: str = Field(default="authz_rule", description="Policy rule table name")
    principal_table: str = Field(default="principals", description="Identity table name")
    audit_table: str = Field(default="authz_audit_logs", description="Authorization audit table name")

    # Redis
    redis_url: Optional[str] = Field(default=None, description="Redis URL; caching and rate limiting are off without it")
    redis_key_prefix: str = Field(default="authgate", description="Prefix for every Redis key")
    use_memory_counters: bool = Field(default=False, description="Process-local rate limit counters when Redis is off")

    # Auth-state cache
    auth_state_ttl_seconds: int = Field(default=600, description="Auth-state cache TTL")
    cache_timeout_seconds: float = Field(default=0.5)
    identity_timeout_seconds: float = Field(default=2.0)
    counter_timeout_seconds: float = Field(default=0.5)

    # Routing
    admin_path_prefix: str = Field(default="/api/v1/admin")
    user_path_prefix: str = Field(default="/api/v1/user")

    # Startup
    bootstrap_builtin_roles: bool = Field(default=True)
    super_admin_username: Optional[str] = Field(default=None, description="Create this super admin at startup if missing")
    super_admin_password: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="'text' or 'json'")
    log_file: Optional[str] = Field(default=None)
    enable_audit_logging: bool = Field(default=True)
    audit_log_level: str = Field(default="INFO")


@lru_cache()
def get_settings() -> GatewaySettings:
    """Settings read once from the environment."""
    return GatewaySettings()


def validate_jwt_config(settings: GatewaySettings) -> List[str]:
    """
    Check the token settings for production use.

    Returns:
        Human readable issues; empty when the configuration looks sound
    """
    issues = []

    if not settings.jwt_secret_key:
        issues.append("JWT secret key is not set - every protected request will be rejected")
    elif len(settings.jwt_secret_key) < MIN_SECRET_LENGTH:
        issues.append(f"JWT secret key should be at least {MIN_SECRET_LENGTH} characters long")

    if settings.access_token_expire_minutes > 24 * 60:
        issues.append("Access token expiration is longer than a day")

    if settings.auth_state_ttl_seconds <= 0:
        issues.append("Auth-state cache TTL must be positive")

    if not settings.redis_url:
        issues.append("Redis URL not set - auth-state cache disabled, rate limits inactive")

    for issue in issues:
        logger.warning(f"Configuration issue: {issue}")
    return issues

"""
Exception taxonomy and rejection reasons for the gateway.

Input errors (bad role names, empty actions) and infrastructure errors
(policy store, counter store, identity store) are raised as subclasses of
``AuthGatewayError``. Request-level rejections carry a stable
``RejectReason`` that is rendered to the caller together with a localized
message; the underlying exception text never leaves the process.
"""

from enum import Enum
from typing import Optional

from fastapi import status


class AuthGatewayError(Exception):
    """Base class for all gateway errors."""


class InvalidRoleError(AuthGatewayError, ValueError):
    """Role name is empty or otherwise unusable."""


class ReservedRoleError(InvalidRoleError):
    """The reserved anchor role was passed to a role operation."""


class ImmutableRoleError(AuthGatewayError, ValueError):
    """Built-in roles cannot be deleted."""


class InvalidPolicyError(AuthGatewayError, ValueError):
    """Policy object or action is missing."""


class PolicyStoreError(AuthGatewayError):
    """Policy persistence failed."""


class PrincipalNotFound(AuthGatewayError, LookupError):
    """The identity store has no record for the principal."""


class IdentityStoreError(AuthGatewayError):
    """The identity store could not be queried."""


class CacheError(AuthGatewayError):
    """Auth-state cache read or write failed."""


class CounterStoreError(AuthGatewayError):
    """Rate-limit counter store failed or returned garbage."""


class RejectReason(str, Enum):
    """Machine-readable reason codes returned on rejected requests."""
    JWT_SECRET_MISSING = "jwt_secret_missing"
    AUTH_HEADER_MISSING = "auth_header_missing"
    AUTH_HEADER_INVALID = "auth_header_invalid"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REVOKED = "token_revoked"
    USER_DISABLED = "user_disabled"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    RATE_LIMIT_UNAVAILABLE = "rate_limit_unavailable"

    @property
    def status_code(self) -> int:
        return _REASON_STATUS[self]


_REASON_STATUS = {
    RejectReason.JWT_SECRET_MISSING: status.HTTP_401_UNAUTHORIZED,
    RejectReason.AUTH_HEADER_MISSING: status.HTTP_401_UNAUTHORIZED,
    RejectReason.AUTH_HEADER_INVALID: status.HTTP_401_UNAUTHORIZED,
    RejectReason.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    RejectReason.TOKEN_REVOKED: status.HTTP_401_UNAUTHORIZED,
    RejectReason.USER_DISABLED: status.HTTP_401_UNAUTHORIZED,
    RejectReason.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    RejectReason.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    RejectReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectReason.RATE_LIMIT_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class AuthRejection(AuthGatewayError):
    """A request was rejected by the gateway.

    Attributes:
        reason: Stable reason code
        retry_after: Seconds until the caller may retry (rate limiting only)
        message_key: Catalog key overriding the default message for ``reason``
    """

    def __init__(
        self,
        reason: RejectReason,
        detail: str = "",
        retry_after: Optional[int] = None,
        message_key: Optional[str] = None,
    ):
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail
        self.retry_after = retry_after
        self.message_key = message_key

    @property
    def status_code(self) -> int:
        return self.reason.status_code

"""FastAPI dependencies shared by the endpoint modules."""

from typing import Optional

from fastapi import Request

from authgate.core.errors import AuthRejection, RejectReason
from authgate.core.normalize import ADMIN_KIND
from authgate.core.rate_limit import KeyFunc, RateLimitDecision
from authgate.core.tokens import AuthenticatedPrincipal
from authgate.provider import GatewayContainer
from authgate.utils.helpers import get_client_ip, get_request_id


def get_container(request: Request) -> GatewayContainer:
    return request.app.state.container


def get_current_admin(request: Request) -> AuthenticatedPrincipal:
    """Admin established by the gateway middleware for this request."""
    principal = getattr(request.state, "principal", None)
    if principal is None or principal.kind != ADMIN_KIND:
        raise AuthRejection(RejectReason.UNAUTHORIZED)
    return principal


def require_principal(kind: str):
    """
    Authenticate a principal of ``kind`` without a policy check.

    Used for self-service routes outside the guarded prefixes.
    """
    async def authenticate(request: Request) -> AuthenticatedPrincipal:
        principal = getattr(request.state, "principal", None)
        if principal is not None and principal.kind == kind:
            return principal
        container = get_container(request)
        principal = await container.gateway.authenticate(request.headers.get("Authorization"), kind)
        request.state.principal = principal
        return principal

    return authenticate


def rate_limit(rule_name: str, key_func: Optional[KeyFunc] = None):
    """
    Apply the configured rate-limit rule ``rule_name`` to a route.

    The rule is read from the gateway configuration at request time; a
    missing rule lets every request through.
    """
    async def enforce(request: Request) -> RateLimitDecision:
        container = get_container(request)
        rule = container.config.rate_limit(rule_name)
        check = container.rate_limiter.dependency(rule, key_func)
        try:
            return await check(request)
        except AuthRejection as rejection:
            if rejection.reason is RejectReason.RATE_LIMITED:
                await container.audit.log_rate_limited(
                    identity=get_client_ip(request),
                    rule=rule_name,
                    retry_after=rejection.retry_after or 0,
                    request_id=get_request_id(request),
                )
            raise

    return enforce

"""
Authentication and RBAC middleware.

``GatewayAuthMiddleware`` guards one path prefix for one principal kind:
- admin prefix: token validation followed by a policy check on the
  request's method and path, super admins skip the policy check
- user prefix: token validation only, disabled users are rejected

The established principal is stored on ``request.state.principal``.
Rejections are rendered with a stable reason code and a localized message.
"""

import logging
import time
from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from authgate.config.logging import gateway_logger
from authgate.core.normalize import ADMIN_KIND
from authgate.middleware.responses import rejection_response
from authgate.utils.helpers import (
    REQUEST_ID_HEADER,
    get_client_ip,
    get_request_id,
    get_user_agent,
    new_request_id,
)

logger = logging.getLogger(__name__)


class GatewayAuthMiddleware(BaseHTTPMiddleware):
    """
    Gateway middleware for one protected prefix.

    The AccessGateway is looked up on ``app.state.container`` at request
    time, so the middleware can be registered before the container is built.
    """

    def __init__(
        self,
        app,
        path_prefix: str = "/api/v1/admin",
        kind: str = ADMIN_KIND,
        enforce_rbac: bool = True,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        """
        Initialize the middleware.

        Args:
            app: ASGI application
            path_prefix: Requests below this prefix are checked
            kind: Principal kind expected in tokens
            enforce_rbac: Run the policy check after authentication
            exempt_paths: Exact paths below the prefix that are not checked
        """
        super().__init__(app)
        self.path_prefix = path_prefix.rstrip("/")
        self.kind = kind
        self.enforce_rbac = enforce_rbac
        self.exempt_paths = set(exempt_paths or ())

    def _applies_to(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self._applies_to(path) or request.method == "OPTIONS":
            return await call_next(request)

        container = request.app.state.container
        decision = await container.gateway.evaluate(
            method=request.method,
            path=path,
            authorization=request.headers.get("Authorization"),
            kind=self.kind,
            enforce_rbac=self.enforce_rbac,
        )

        if not decision.allowed:
            client_ip = get_client_ip(request)
            gateway_logger.log_decision(
                method=request.method,
                path=path,
                kind=self.kind,
                reason=decision.reason.value,
                principal=decision.principal.subject if decision.principal else None,
            )
            if decision.principal is not None:
                await container.audit.log_authorization_failure(
                    principal=decision.principal.subject,
                    resource=path,
                    action=request.method,
                    ip_address=client_ip,
                    request_id=get_request_id(request),
                )
            else:
                await container.audit.log_authentication_failure(
                    reason=decision.reason.value,
                    ip_address=client_ip,
                    user_agent=get_user_agent(request),
                    path=path,
                    request_id=get_request_id(request),
                )
            return rejection_response(request, decision.reason, decision.retry_after, decision.message_key)

        request.state.principal = decision.principal
        return await call_next(request)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Request ID propagation, access logging and security headers.

    Reuses an incoming ``X-Request-ID`` or generates one, exposes it on
    ``request.state.request_id`` and echoes it on the response.
    """

    def __init__(self, app, access_log: bool = True):
        super().__init__(app)
        self.access_log = access_log

    async def dispatch(self, request: Request, call_next):
        request_id = new_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - start_time) * 1000, 3)
        response.headers[REQUEST_ID_HEADER] = request_id
        self._add_security_headers(response)

        if self.access_log:
            principal = getattr(request.state, "principal", None)
            gateway_logger.log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                response_time=elapsed_ms,
                client_ip=get_client_ip(request),
                user_agent=get_user_agent(request),
                request_id=request_id,
                principal=principal.subject if principal else None,
            )
        return response

    def _add_security_headers(self, response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if response.status_code in (401, 403):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

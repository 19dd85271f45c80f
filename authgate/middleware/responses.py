"""Error responses for rejected requests."""

import logging
from typing import Optional

from fastapi import Request
from starlette.responses import JSONResponse

from authgate.core.errors import AuthGatewayError, AuthRejection, RejectReason
from authgate.core.messages import resolve_locale, translate

logger = logging.getLogger(__name__)


def rejection_response(
    request: Request,
    reason: RejectReason,
    retry_after: Optional[int] = None,
    message_key: Optional[str] = None,
) -> JSONResponse:
    """
    Render a rejection as ``{"code", "reason", "message"}``.

    The message is localized from the Accept-Language header. Internal error
    details are never included.
    """
    locale = resolve_locale(request.headers.get("Accept-Language"))
    key = message_key or f"error.{reason.value}"
    args = (retry_after,) if retry_after is not None else ()
    message = translate(locale, key, *args)

    headers = {"Cache-Control": "no-store"}
    if reason.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)

    return JSONResponse(
        status_code=reason.status_code,
        content={"code": reason.status_code, "reason": reason.value, "message": message},
        headers=headers,
    )


async def auth_rejection_handler(request: Request, exc: AuthRejection) -> JSONResponse:
    """Exception handler for AuthRejection raised from dependencies and routes."""
    return rejection_response(request, exc.reason, exc.retry_after, exc.message_key)


async def gateway_error_handler(request: Request, exc: AuthGatewayError) -> JSONResponse:
    """Unhandled store or cache failure; the cause is logged, never returned."""
    logger.error(f"Unhandled gateway error on {request.method} {request.url.path}: {exc}")
    locale = resolve_locale(request.headers.get("Accept-Language"))
    return JSONResponse(
        status_code=500,
        content={"code": 500, "reason": "internal", "message": translate(locale, "error.internal")},
        headers={"Cache-Control": "no-store"},
    )

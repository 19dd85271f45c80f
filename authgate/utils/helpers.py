"""
Utility helper functions for the gateway.

This module provides request-inspection helpers shared by the middleware,
the rate limiter and the administration endpoints.
"""

import uuid
from typing import Optional

from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-ID"


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP address from a request.

    Proxy headers are honoured in order: the first entry of
    ``X-Forwarded-For``, then ``X-Real-IP``, then the socket peer.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return request.headers.get("User-Agent", "unknown")


def get_request_id(request: Request) -> str:
    """Request ID assigned by the request context middleware, if any."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return request.headers.get(REQUEST_ID_HEADER, "")


def new_request_id(incoming: Optional[str] = None) -> str:
    """
    Reuse a sane incoming request ID or generate a new one.

    Examples:
        "abc-123" -> "abc-123"
        None -> "5f0c..." (uuid4 hex)
    """
    if incoming:
        incoming = incoming.strip()
        if 0 < len(incoming) <= 128 and incoming.isprintable():
            return incoming
    return uuid.uuid4().hex


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate a string for logging."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix

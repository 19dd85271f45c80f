"""HTTP middleware for the gateway."""

from authgate.middleware.auth import GatewayAuthMiddleware, RequestContextMiddleware

__all__ = ["GatewayAuthMiddleware", "RequestContextMiddleware"]

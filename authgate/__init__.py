"""
authgate - identity, RBAC and rate-limit gateway for HTTP APIs.

The package is organised as:
- authgate.core: normalizer, policy engine, role registry, token validation,
  auth-state cache and rate limiter
- authgate.config: settings, YAML configuration and logging
- authgate.middleware: Starlette middleware wiring the gateway into FastAPI
- authgate.api: administration endpoints
"""

__version__ = "0.1.0"

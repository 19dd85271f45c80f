"""
API v1 Router Configuration.

This module organizes all API v1 endpoints:
- Authentication (login, logout everywhere)
- Authorization management below the admin prefix
- End-user self service below the user prefix
- Health checks

Admin and user routes are guarded by the gateway middleware.
"""

from fastapi import APIRouter

from authgate.api.v1.endpoints import auth, authz, health, user
from authgate.core.normalize import API_V1_PREFIX

# Create main v1 router
api_router = APIRouter(prefix=API_V1_PREFIX)

api_router.include_router(auth.router)
api_router.include_router(authz.router)
api_router.include_router(user.router)
api_router.include_router(health.router)

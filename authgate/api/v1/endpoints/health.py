"""
Health check endpoints for the gateway.

Reports liveness and the state of the gateway's dependencies: the policy
store, the auth-state cache and the rate-limit counter store.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from authgate import __version__
from authgate.api.deps import get_container
from authgate.provider import GatewayContainer


class HealthStatus(BaseModel):
    """Health status response model."""
    status: str
    timestamp: datetime
    version: str
    uptime_seconds: float
    dependencies: Optional[Dict[str, Dict[str, Any]]] = None


_start_time = time.time()

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "",
    response_model=HealthStatus,
    summary="Basic health check",
)
async def health_check() -> HealthStatus:
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        uptime_seconds=time.time() - _start_time,
    )


@router.get(
    "/detailed",
    response_model=HealthStatus,
    summary="Detailed health check",
    description="Health of the policy store, auth-state cache and counter store"
)
async def detailed_health_check(container: GatewayContainer = Depends(get_container)) -> HealthStatus:
    """
    Detailed health check endpoint.

    The status is ``degraded`` when the policy store is unreachable. A missing
    cache or counter store is reported but does not degrade the status since
    the gateway keeps serving without them.
    """
    policy_ok = await run_in_threadpool(container.policy_store.ping)
    policy_stats = await run_in_threadpool(container.policy_engine.stats)
    dependencies: Dict[str, Dict[str, Any]] = {
        "policy_store": {
            "healthy": policy_ok,
            **policy_stats,
        },
        "auth_cache": {
            "enabled": container.auth_cache.enabled,
            "healthy": await container.auth_cache.ping() if container.auth_cache.enabled else None,
        },
    }

    dependencies["rate_limit"] = {
        "enabled": container.rate_limiter.store is not None,
        "healthy": await container.rate_limiter.ping(),
    }

    return HealthStatus(
        status="healthy" if policy_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        uptime_seconds=time.time() - _start_time,
        dependencies=dependencies,
    )

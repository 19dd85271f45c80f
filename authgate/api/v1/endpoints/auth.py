"""
Authentication endpoints.

This module provides REST API endpoints for token management:
- Admin and user login with access token issuance
- Logout from every device (session revocation)

Login routes are rate limited per username and client IP.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from authgate.api.deps import get_container, rate_limit, require_principal
from authgate.core.errors import AuthRejection, PrincipalNotFound, RejectReason
from authgate.core.identity import verify_password
from authgate.core.normalize import ADMIN_KIND, USER_KIND
from authgate.core.rate_limit import key_by_ip, key_by_ip_and_json_field
from authgate.core.tokens import AuthenticatedPrincipal
from authgate.provider import GatewayContainer
from authgate.utils.helpers import get_client_ip, get_request_id, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


class LoginRequest(BaseModel):
    """Login request model."""
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=200)


class TokenResponse(BaseModel):
    """Token response model."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    principal_id: int
    kind: str


class LogoutAllResponse(BaseModel):
    message: str
    credential_version: int


async def _login(request: Request, kind: str, login_data: LoginRequest, container: GatewayContainer) -> TokenResponse:
    try:
        record = await run_in_threadpool(
            container.identity_store.get_principal_by_username, kind, login_data.username
        )
    except PrincipalNotFound:
        record = None

    if record is None or not verify_password(login_data.password, record.password_hash):
        await container.audit.log_authentication_failure(
            reason="invalid_credentials",
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            path=request.url.path,
            request_id=get_request_id(request),
        )
        raise AuthRejection(RejectReason.UNAUTHORIZED, detail="invalid credentials")

    if record.disabled:
        raise AuthRejection(RejectReason.USER_DISABLED)

    token = container.issuer.issue(record)
    logger.info(f"{kind} {record.id} logged in from {get_client_ip(request)}")
    return TokenResponse(
        access_token=token,
        expires_in=container.issuer.expire_minutes * 60,
        principal_id=record.id,
        kind=kind,
    )


@router.post(
    "/admin/login",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("admin_login", key_by_ip_and_json_field("username")))],
)
async def admin_login(
    request: Request,
    login_data: LoginRequest,
    container: GatewayContainer = Depends(get_container),
) -> TokenResponse:
    """Authenticate an admin and return an access token."""
    return await _login(request, ADMIN_KIND, login_data, container)


@router.post(
    "/user/login",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("user_login", key_by_ip_and_json_field("username")))],
)
async def user_login(
    request: Request,
    login_data: LoginRequest,
    container: GatewayContainer = Depends(get_container),
) -> TokenResponse:
    """Authenticate a user and return an access token."""
    return await _login(request, USER_KIND, login_data, container)


@router.post(
    "/logout-all",
    response_model=LogoutAllResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(rate_limit("logout_all", key_by_ip))],
)
async def logout_all(
    principal: AuthenticatedPrincipal = Depends(require_principal(ADMIN_KIND)),
    container: GatewayContainer = Depends(get_container),
) -> LogoutAllResponse:
    """
    Log the calling admin out of every device.

    Every token issued before this call, including the one used for it,
    is rejected afterwards.
    """
    record = await container.revoker.revoke_all(principal.kind, principal.id)
    logger.info(f"{principal.subject} revoked all sessions")
    return LogoutAllResponse(
        message="All sessions revoked",
        credential_version=record.credential_version,
    )

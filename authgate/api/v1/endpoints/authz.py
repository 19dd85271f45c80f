"""
Authorization Management API Endpoints.

This module provides REST API endpoints for managing roles and rules:
- Caller permission snapshot
- Role management (create, delete, list, inheritance)
- Role rule management (grant, revoke, list)
- Admin role assignment and effective permissions
- Session revocation for an admin
- Authorization audit log search

All routes live below the admin prefix and are therefore guarded by the
gateway middleware. Every mutation is written to the security audit log.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from authgate.api.deps import get_container, get_current_admin
from authgate.core.audit import (
    ACTION_ADMIN_ROLES_SET,
    ACTION_POLICY_GRANT,
    ACTION_POLICY_REVOKE,
    ACTION_ROLE_CREATE,
    ACTION_ROLE_DELETE,
    ACTION_ROLE_DISINHERIT,
    ACTION_ROLE_INHERIT,
    ACTION_SESSIONS_REVOKE,
    AuditFilter,
    AuditStoreError,
    AuthzAuditEntry,
)
from authgate.core.errors import AuthGatewayError, PrincipalNotFound
from authgate.core.identity import PrincipalRecord
from authgate.core.normalize import ADMIN_KIND, normalize_role
from authgate.core.policy_engine import Policy
from authgate.core.tokens import AuthenticatedPrincipal
from authgate.provider import GatewayContainer
from authgate.utils.helpers import get_request_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/authz", tags=["Authorization Management"])


# Request/Response Models

class RoleRequest(BaseModel):
    """Request model for creating a role."""
    role: str = Field(..., min_length=1, max_length=100, description="Role name, with or without 'role:'")


class RoleParentRequest(BaseModel):
    parent: str = Field(..., min_length=1, max_length=100)


class PolicyRequest(BaseModel):
    """Request model for granting or revoking a role rule."""
    role: str = Field(..., min_length=1, max_length=100)
    object: str = Field(..., min_length=1, max_length=255, description="Route, e.g. /api/v1/admin/orders/:id")
    action: str = Field(..., min_length=1, max_length=16, description="HTTP verb or *")


class AdminRolesRequest(BaseModel):
    roles: List[str] = Field(default_factory=list)


class PolicyResponse(BaseModel):
    subject: str
    object: str
    action: str

    @classmethod
    def from_policy(cls, policy: Policy) -> "PolicyResponse":
        return cls(subject=policy.subject, object=policy.object, action=policy.action)


class RoleResponse(BaseModel):
    role: str
    builtin: bool = False
    parents: List[str] = Field(default_factory=list)


class AuthzMeResponse(BaseModel):
    admin_id: int
    username: str
    is_super: bool
    roles: List[str]
    policies: List[PolicyResponse]


class AdminSummary(BaseModel):
    id: int
    username: str
    is_super: bool
    disabled: bool
    roles: List[str]


class SessionRevokeResponse(BaseModel):
    admin_id: int
    credential_version: int


class AuditEntryResponse(BaseModel):
    id: int
    operator_admin_id: int
    operator_username: str
    target_admin_id: Optional[int] = None
    target_username: str = ""
    action: str
    role: str = ""
    object: str = ""
    method: str = ""
    request_id: str = ""
    detail: dict = Field(default_factory=dict)
    created_at: int


class AuditPage(BaseModel):
    items: List[AuditEntryResponse]
    page: int
    page_size: int
    total: int


def _client_error(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _server_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Authorization {action} failed: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error"
    )


def _role_views(registry, roles: List[str]) -> List[RoleResponse]:
    """Role responses with parents. Takes the engine's read lock, so run it off the event loop."""
    return [
        RoleResponse(
            role=role,
            builtin=registry.is_builtin_role(role),
            parents=registry.get_role_parents(role),
        )
        for role in roles
    ]


async def _load_admin(container: GatewayContainer, admin_id: int) -> PrincipalRecord:
    try:
        return await run_in_threadpool(container.identity_store.get_principal_by_id, ADMIN_KIND, admin_id)
    except PrincipalNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Admin not found")
    except AuthGatewayError as e:
        raise _server_error("admin lookup", e)


async def _audit(
    request: Request,
    container: GatewayContainer,
    operator: AuthenticatedPrincipal,
    action: str,
    **fields
):
    await container.audit.log_authz_change(
        AuthzAuditEntry(
            operator_admin_id=operator.id,
            operator_username=operator.username,
            action=action,
            request_id=get_request_id(request),
            **fields
        )
    )


# Endpoints

@router.get("/me", response_model=AuthzMeResponse)
async def get_authz_me(
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Roles and effective rules of the calling admin."""
    registry = container.registry
    roles = await run_in_threadpool(registry.get_admin_roles, current_admin.id)
    policies = await run_in_threadpool(registry.get_admin_policies, current_admin.id)
    return AuthzMeResponse(
        admin_id=current_admin.id,
        username=current_admin.username,
        is_super=current_admin.is_super,
        roles=roles,
        policies=[PolicyResponse.from_policy(p) for p in policies],
    )


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(container: GatewayContainer = Depends(get_container)):
    """List every role with its parents."""
    registry = container.registry
    roles = await run_in_threadpool(registry.list_roles)
    return await run_in_threadpool(_role_views, registry, roles)


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    body: RoleRequest,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Create a role. Creating an existing role is a no-op."""
    try:
        role = await run_in_threadpool(container.registry.ensure_role, body.role)
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("role create", e)

    await _audit(request, container, current_admin, ACTION_ROLE_CREATE, role=role, detail={"role": role})
    return RoleResponse(role=role, builtin=container.registry.is_builtin_role(role))


@router.delete("/roles/{role}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role: str,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Delete a custom role, its rules and every inheritance edge touching it."""
    try:
        deleted = await run_in_threadpool(container.registry.delete_role, role)
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("role delete", e)

    await _audit(request, container, current_admin, ACTION_ROLE_DELETE, role=deleted, detail={"role": deleted})


@router.get("/roles/{role}/policies", response_model=List[PolicyResponse])
async def get_role_policies(role: str, container: GatewayContainer = Depends(get_container)):
    try:
        policies = await run_in_threadpool(container.registry.get_role_policies, role)
    except ValueError as e:
        raise _client_error(e)
    return [PolicyResponse.from_policy(p) for p in policies]


@router.post("/roles/{role}/parents", response_model=RoleResponse)
async def add_role_parent(
    role: str,
    body: RoleParentRequest,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Make ``role`` inherit the rules of ``parent``."""
    registry = container.registry
    try:
        await run_in_threadpool(registry.inherit_role, role, body.parent)
        canonical = normalize_role(role)
        parent = normalize_role(body.parent)
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("role inherit", e)

    await _audit(
        request, container, current_admin, ACTION_ROLE_INHERIT,
        role=canonical, detail={"role": canonical, "parent": parent},
    )
    views = await run_in_threadpool(_role_views, registry, [canonical])
    return views[0]


@router.delete("/roles/{role}/parents/{parent}", response_model=RoleResponse)
async def remove_role_parent(
    role: str,
    parent: str,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    registry = container.registry
    try:
        await run_in_threadpool(registry.disinherit_role, role, parent)
        canonical = normalize_role(role)
        parent = normalize_role(parent)
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("role disinherit", e)

    await _audit(
        request, container, current_admin, ACTION_ROLE_DISINHERIT,
        role=canonical, detail={"role": canonical, "parent": parent},
    )
    views = await run_in_threadpool(_role_views, registry, [canonical])
    return views[0]


@router.post("/policies", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def grant_policy(
    body: PolicyRequest,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Grant a rule to a role, creating the role if needed."""
    try:
        policy = await run_in_threadpool(
            container.registry.grant_role_policy, body.role, body.object, body.action
        )
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("policy grant", e)

    await _audit(
        request, container, current_admin, ACTION_POLICY_GRANT,
        role=policy.subject, object=policy.object, method=policy.action,
        detail={"role": policy.subject, "object": policy.object, "method": policy.action},
    )
    return PolicyResponse.from_policy(policy)


@router.post("/policies/revoke", response_model=PolicyResponse)
async def revoke_policy(
    body: PolicyRequest,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Revoke a rule from a role. Revoking a missing rule is a no-op."""
    try:
        policy = await run_in_threadpool(
            container.registry.revoke_role_policy, body.role, body.object, body.action
        )
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("policy revoke", e)

    await _audit(
        request, container, current_admin, ACTION_POLICY_REVOKE,
        role=policy.subject, object=policy.object, method=policy.action,
        detail={"role": policy.subject, "object": policy.object, "method": policy.action},
    )
    return PolicyResponse.from_policy(policy)


def _admin_summaries(registry, admins: List[PrincipalRecord]) -> List[AdminSummary]:
    return [
        AdminSummary(
            id=admin.id,
            username=admin.username,
            is_super=admin.is_super,
            disabled=admin.disabled,
            roles=registry.get_admin_roles(admin.id),
        )
        for admin in admins
    ]


@router.get("/admins", response_model=List[AdminSummary])
async def list_admins(container: GatewayContainer = Depends(get_container)):
    """All admins with the roles they hold."""
    try:
        admins = await run_in_threadpool(container.identity_store.list_principals, ADMIN_KIND)
    except AuthGatewayError as e:
        raise _server_error("admin listing", e)

    return await run_in_threadpool(_admin_summaries, container.registry, admins)


@router.get("/admins/{admin_id}/roles", response_model=List[str])
async def get_admin_roles(admin_id: int, container: GatewayContainer = Depends(get_container)):
    await _load_admin(container, admin_id)
    try:
        return await run_in_threadpool(container.registry.get_admin_roles, admin_id)
    except ValueError as e:
        raise _client_error(e)


@router.put("/admins/{admin_id}/roles", response_model=List[str])
async def set_admin_roles(
    admin_id: int,
    body: AdminRolesRequest,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Replace the roles of an admin."""
    target = await _load_admin(container, admin_id)
    try:
        roles = await run_in_threadpool(container.registry.set_admin_roles, admin_id, body.roles)
    except ValueError as e:
        raise _client_error(e)
    except AuthGatewayError as e:
        raise _server_error("admin role assignment", e)

    await _audit(
        request, container, current_admin, ACTION_ADMIN_ROLES_SET,
        target_admin_id=target.id, target_username=target.username,
        detail={"roles": roles},
    )
    return roles


@router.get("/admins/{admin_id}/policies", response_model=List[PolicyResponse])
async def get_admin_policies(admin_id: int, container: GatewayContainer = Depends(get_container)):
    await _load_admin(container, admin_id)
    try:
        policies = await run_in_threadpool(container.registry.get_admin_policies, admin_id)
    except ValueError as e:
        raise _client_error(e)
    return [PolicyResponse.from_policy(p) for p in policies]


@router.post("/admins/{admin_id}/sessions/revoke", response_model=SessionRevokeResponse)
async def revoke_admin_sessions(
    admin_id: int,
    request: Request,
    current_admin: AuthenticatedPrincipal = Depends(get_current_admin),
    container: GatewayContainer = Depends(get_container),
):
    """Invalidate every token issued to an admin so far."""
    target = await _load_admin(container, admin_id)
    try:
        record = await container.revoker.revoke_all(ADMIN_KIND, admin_id)
    except AuthGatewayError as e:
        raise _server_error("session revoke", e)

    await _audit(
        request, container, current_admin, ACTION_SESSIONS_REVOKE,
        target_admin_id=target.id, target_username=target.username,
        detail={"credential_version": record.credential_version},
    )
    return SessionRevokeResponse(admin_id=admin_id, credential_version=record.credential_version)


@router.get("/audit-logs", response_model=AuditPage)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    operator_admin_id: Optional[int] = Query(None, ge=1),
    target_admin_id: Optional[int] = Query(None, ge=1),
    action: str = "",
    role: str = "",
    object: str = "",
    method: str = "",
    created_from: Optional[int] = Query(None, description="Unix seconds"),
    created_to: Optional[int] = Query(None, description="Unix seconds"),
    container: GatewayContainer = Depends(get_container),
):
    """Search authorization changes, newest first."""
    if container.audit_store is None:
        return AuditPage(items=[], page=page, page_size=page_size, total=0)

    query = AuditFilter(
        page=page,
        page_size=page_size,
        operator_admin_id=operator_admin_id,
        target_admin_id=target_admin_id,
        action=action,
        role=role,
        object=object,
        method=method,
        created_from=created_from,
        created_to=created_to,
    )
    try:
        entries, total = await run_in_threadpool(container.audit_store.list, query)
    except AuditStoreError as e:
        raise _server_error("audit listing", e)

    return AuditPage(
        items=[AuditEntryResponse(**entry.to_dict()) for entry in entries],
        page=page,
        page_size=page_size,
        total=total,
    )

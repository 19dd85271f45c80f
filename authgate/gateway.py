"""
Gateway decision point.

``AccessGateway`` ties token validation and the role registry together and
answers, for a method, path and Authorization header, either
``allow(principal)`` or ``reject(status, reason)``. The HTTP middleware and
FastAPI dependencies are thin wrappers around it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.concurrency import run_in_threadpool

from authgate.core.errors import AuthGatewayError, AuthRejection, RejectReason
from authgate.core.normalize import ADMIN_KIND, normalize_action, normalize_object
from authgate.core.rbac import RoleRegistry
from authgate.core.tokens import AuthenticatedPrincipal, TokenValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayDecision:
    """Outcome of a gateway check."""
    allowed: bool
    principal: Optional[AuthenticatedPrincipal] = None
    reason: Optional[RejectReason] = None
    retry_after: Optional[int] = None
    message_key: Optional[str] = None

    @property
    def status_code(self) -> int:
        if self.allowed:
            return 200
        return self.reason.status_code

    @classmethod
    def allow(cls, principal: Optional[AuthenticatedPrincipal] = None) -> "GatewayDecision":
        return cls(allowed=True, principal=principal)

    @classmethod
    def reject(cls, reason: RejectReason, retry_after: Optional[int] = None,
               message_key: Optional[str] = None) -> "GatewayDecision":
        return cls(allowed=False, reason=reason, retry_after=retry_after, message_key=message_key)

    @classmethod
    def from_rejection(cls, rejection: AuthRejection,
                       principal: Optional[AuthenticatedPrincipal] = None) -> "GatewayDecision":
        return cls(
            allowed=False,
            principal=principal,
            reason=rejection.reason,
            retry_after=rejection.retry_after,
            message_key=rejection.message_key,
        )


class AccessGateway:
    """Authentication plus RBAC for incoming requests."""

    def __init__(self, validators: Dict[str, TokenValidator], registry: RoleRegistry):
        """
        Initialize the gateway.

        Args:
            validators: Token validator per principal kind (``admin``, ``user``)
            registry: Role registry consulted for admin requests
        """
        self._validators = validators
        self.registry = registry

    def validator(self, kind: str) -> TokenValidator:
        try:
            return self._validators[kind]
        except KeyError:
            raise AuthRejection(RejectReason.TOKEN_INVALID, f"no validator for {kind}")

    async def authenticate(self, authorization: Optional[str], kind: str = ADMIN_KIND) -> AuthenticatedPrincipal:
        """Establish identity or raise AuthRejection."""
        return await self.validator(kind).authenticate(authorization)

    async def authorize(self, principal: AuthenticatedPrincipal, method: str, path: str) -> None:
        """
        Check an admin principal against the policy engine.

        Super admins are not checked.

        Raises:
            AuthRejection: ``forbidden`` when not allowed, ``unauthorized``
                when the check itself failed
        """
        if principal.is_super:
            return

        resource = normalize_object(path)
        action = normalize_action(method)
        try:
            allowed = await run_in_threadpool(
                self.registry.enforce_admin, principal.id, resource, action
            )
        except AuthGatewayError as e:
            logger.error(
                f"admin_rbac_enforce_failed admin_id={principal.id} method={action} path={path}: {e}"
            )
            raise AuthRejection(RejectReason.UNAUTHORIZED, "policy check failed")

        if not allowed:
            logger.warning(
                f"admin_rbac_permission_denied admin_id={principal.id} method={action} "
                f"path={path} resource={resource}"
            )
            raise AuthRejection(RejectReason.FORBIDDEN)

    async def evaluate(
        self,
        method: str,
        path: str,
        authorization: Optional[str],
        kind: str = ADMIN_KIND,
        enforce_rbac: bool = True,
    ) -> GatewayDecision:
        """Run authentication and, for admins, authorization."""
        try:
            principal = await self.authenticate(authorization, kind)
        except AuthRejection as rejection:
            return GatewayDecision.from_rejection(rejection)

        if enforce_rbac and kind == ADMIN_KIND:
            try:
                await self.authorize(principal, method, path)
            except AuthRejection as rejection:
                return GatewayDecision.from_rejection(rejection, principal)
        return GatewayDecision.allow(principal)

"""
Role registry for administrators.

Built on top of the policy engine, the registry provides:
- Named role management (create, delete, list)
- Role rules (grant, revoke, list)
- Role inheritance
- Per-admin role assignment with replace semantics
- Effective permission lookup for an admin
- Admin access checks against raw routes and verbs

All inputs are normalized before they reach the engine, and every value
returned is in normalized form.
"""

import logging
from typing import Iterable, List, Optional

from authgate.core.bootstrap import BUILTIN_ROLE_NAMES
from authgate.core.errors import (
    ImmutableRoleError,
    InvalidPolicyError,
    ReservedRoleError,
)
from authgate.core.normalize import (
    ROLE_ANCHOR,
    is_role_subject,
    normalize_action,
    normalize_object,
    normalize_role,
    subject_for_admin,
)
from authgate.core.policy_engine import Policy, PolicyEngine

logger = logging.getLogger(__name__)


def _check_admin_id(admin_id: int) -> None:
    if not isinstance(admin_id, int) or isinstance(admin_id, bool) or admin_id <= 0:
        raise InvalidPolicyError(f"invalid admin id: {admin_id!r}")


class RoleRegistry:
    """Role and admin-assignment management over a PolicyEngine."""

    def __init__(self, engine: PolicyEngine, builtin_roles: Optional[Iterable[str]] = None):
        """
        Initialize the registry.

        Args:
            engine: Policy engine owning the rule state
            builtin_roles: Role names that cannot be deleted; the built-in
                catalog when omitted
        """
        self.engine = engine
        if builtin_roles is None:
            self._builtin = set(BUILTIN_ROLE_NAMES)
        else:
            self._builtin = {normalize_role(r) for r in builtin_roles}

    def _role(self, name: str) -> str:
        role = normalize_role(name)
        if role == ROLE_ANCHOR:
            raise ReservedRoleError(f"role name is reserved: {name}")
        return role

    def is_builtin_role(self, name: str) -> bool:
        return normalize_role(name) in self._builtin

    def ensure_role(self, name: str) -> str:
        """
        Create a role if it does not exist yet.

        Returns:
            Canonical role name (``role:<name>``)

        Raises:
            InvalidRoleError: Empty name
            ReservedRoleError: The anchor name was passed
        """
        role = self._role(name)
        if self.engine.add_role(role):
            logger.info(f"Created role {role}")
        return role

    def list_roles(self) -> List[str]:
        return self.engine.roles()

    def delete_role(self, name: str) -> str:
        """
        Delete a role together with its rules and inheritance edges.

        Rules where the role is the subject, groupings where the role is the
        member and groupings where it is the group are removed in that order.
        Each step commits on its own; if a later step fails, earlier removals
        stay in effect and the error is raised.

        Raises:
            ImmutableRoleError: The role is built in
        """
        role = self._role(name)
        if role in self._builtin:
            raise ImmutableRoleError(f"built-in role cannot be deleted: {role}")

        self.engine.remove_filtered_policy(0, role)
        self.engine.remove_filtered_grouping(0, role)
        self.engine.remove_filtered_grouping(1, role)
        self.engine.remove_role(role)
        logger.info(f"Deleted role {role}")
        return role

    def grant_role_policy(self, name: str, obj: str, action: str) -> Policy:
        role = self.ensure_role(name)
        policy = self._policy(role, obj, action)
        if self.engine.add_policy(policy.subject, policy.object, policy.action):
            logger.info(f"Granted {policy.action} {policy.object} to {role}")
        return policy

    def revoke_role_policy(self, name: str, obj: str, action: str) -> Policy:
        role = self.ensure_role(name)
        policy = self._policy(role, obj, action)
        if self.engine.remove_policy(policy.subject, policy.object, policy.action):
            logger.info(f"Revoked {policy.action} {policy.object} from {role}")
        return policy

    def get_role_policies(self, name: str) -> List[Policy]:
        return self.engine.get_filtered_policy(0, self._role(name))

    def get_role_parents(self, name: str) -> List[str]:
        return self.engine.get_roles_for(self._role(name))

    def inherit_role(self, name: str, parent: str) -> bool:
        """Make ``name`` inherit every rule of ``parent``."""
        role = self.ensure_role(name)
        parent_role = self.ensure_role(parent)
        if role == parent_role:
            raise InvalidPolicyError("a role cannot inherit from itself")
        return self.engine.add_grouping(role, parent_role)

    def disinherit_role(self, name: str, parent: str) -> bool:
        return self.engine.remove_grouping(self._role(name), self._role(parent))

    @staticmethod
    def _policy(role: str, obj: str, action: str) -> Policy:
        act = normalize_action(action)
        if not act:
            raise InvalidPolicyError("policy action is required")
        return Policy(role, normalize_object(obj), act)

    # Admin assignment

    def set_admin_roles(self, admin_id: int, roles: Iterable[str]) -> List[str]:
        """
        Replace the roles held by an admin.

        Roles not in ``roles`` are dropped; requested roles that do not exist
        yet are created.

        Returns:
            Sorted canonical role names now held by the admin
        """
        _check_admin_id(admin_id)
        wanted = sorted({self._role(r) for r in roles})
        subject = subject_for_admin(admin_id)

        self.engine.remove_filtered_grouping(0, subject)
        for role in wanted:
            self.ensure_role(role)
            self.engine.add_grouping(subject, role)

        logger.info(f"Set roles for {subject}: {wanted}")
        return wanted

    def get_admin_roles(self, admin_id: int) -> List[str]:
        _check_admin_id(admin_id)
        return [
            group for group in self.engine.get_roles_for(subject_for_admin(admin_id))
            if is_role_subject(group) and group != ROLE_ANCHOR
        ]

    def get_admin_policies(self, admin_id: int) -> List[Policy]:
        """
        Effective rules for an admin.

        Returns:
            De-duplicated union of rules granted to the admin directly and
            through every role reachable from it, sorted by subject, object
            and action
        """
        _check_admin_id(admin_id)
        subject = subject_for_admin(admin_id)
        subjects = [subject] + self.engine.get_implicit_roles_for(subject)

        collected = set()
        for s in subjects:
            collected.update(self.engine.get_filtered_policy(0, s))
        return sorted(collected)

    def enforce_admin(self, admin_id: int, obj: str, action: str) -> bool:
        """Check a raw route and verb for an admin."""
        _check_admin_id(admin_id)
        return self.engine.enforce(
            subject_for_admin(admin_id),
            normalize_object(obj),
            normalize_action(action),
        )

    def reload_policy(self) -> None:
        self.engine.load()

"""
Built-in role catalog.

These roles are created at startup and cannot be deleted through the
administration API. Running the bootstrap again against a populated store
adds nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from authgate.core.normalize import normalize_action, normalize_object, normalize_role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleSeed:
    """A built-in role with its inheritance edges and rules."""
    role: str
    inherits: Tuple[str, ...] = ()
    policies: Tuple[Tuple[str, str], ...] = ()
    immutable: bool = True


def _resource(path: str, action: str = "*") -> List[Tuple[str, str]]:
    return [(path, action), (f"{path}/:id", action)]


BUILTIN_ROLE_SEEDS: Tuple[RoleSeed, ...] = (
    RoleSeed(
        role="readonly_auditor",
        policies=(("/admin/*", "GET"),),
    ),
    RoleSeed(
        role="operations",
        inherits=("readonly_auditor",),
        policies=tuple(
            _resource("/admin/products")
            + _resource("/admin/categories")
            + _resource("/admin/posts")
            + _resource("/admin/banners")
            + _resource("/admin/coupons")
            + _resource("/admin/promotions")
            + _resource("/admin/card-secrets")
            + [
                ("/admin/card-secrets/stats", "GET"),
                ("/admin/card-secrets/batches", "GET"),
                ("/admin/card-secrets/template", "GET"),
                ("/admin/upload", "POST"),
            ]
        ),
    ),
    RoleSeed(
        role="support",
        inherits=("readonly_auditor",),
        policies=(
            ("/admin/orders", "GET"),
            ("/admin/orders/:id", "GET"),
            ("/admin/orders/:id", "PATCH"),
            ("/admin/fulfillments", "POST"),
            ("/admin/users", "GET"),
            ("/admin/users/:id", "GET"),
            ("/admin/user-login-logs", "GET"),
            ("/admin/payments", "GET"),
            ("/admin/payments/:id", "GET"),
        ),
    ),
    RoleSeed(
        role="finance",
        inherits=("readonly_auditor",),
        policies=(
            ("/admin/payments", "GET"),
            ("/admin/payments/:id", "GET"),
            ("/admin/payments/export", "GET"),
            ("/admin/payment-channels", "*"),
            ("/admin/payment-channels/:id", "*"),
            ("/admin/orders", "GET"),
            ("/admin/orders/:id", "GET"),
        ),
    ),
)

BUILTIN_ROLE_NAMES = frozenset(
    normalize_role(seed.role) for seed in BUILTIN_ROLE_SEEDS if seed.immutable
)


def bootstrap_builtin_roles(registry, seeds: Tuple[RoleSeed, ...] = BUILTIN_ROLE_SEEDS) -> int:
    """
    Ensure every built-in role exists with its inheritance edges and rules.

    Args:
        registry: RoleRegistry to populate
        seeds: Role catalog, the built-in one by default

    Returns:
        Number of rows that had to be added
    """
    engine = registry.engine
    added = 0

    for seed in seeds:
        role = normalize_role(seed.role)
        if engine.add_role(role):
            added += 1

        for parent in seed.inherits:
            if engine.add_grouping(role, normalize_role(parent)):
                added += 1

        added += engine.add_policies(
            (role, normalize_object(obj), normalize_action(action))
            for obj, action in seed.policies
        )

    if added:
        logger.info(f"Bootstrapped built-in roles: {added} rows added")
    else:
        logger.debug("Built-in roles already present")
    return added

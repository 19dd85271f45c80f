"""
Canonical vocabulary for the policy engine.

Raw route strings, HTTP verbs and role names arrive in many shapes
(``/api/v1/admin/orders/:id``, ``get``, ``Finance Team``). Everything that
reaches the policy engine goes through the functions below first, so that
stored rules and request checks always speak the same language.

All functions are idempotent.
"""

from authgate.core.errors import InvalidRoleError

API_V1_PREFIX = "/api/v1"
ROLE_PREFIX = "role:"
ROLE_ANCHOR = "role:__anchor__"

ADMIN_KIND = "admin"
USER_KIND = "user"


def normalize_object(raw: str) -> str:
    """Map a raw route or path onto a policy object.

    Examples:
        ``""`` -> ``"/"``
        ``"/api/v1"`` -> ``"/"``
        ``"/api/v1/admin/orders/:id"`` -> ``"/admin/orders/:id"``
        ``"admin/settings"`` -> ``"/admin/settings"``
    """
    value = (raw or "").strip()
    if not value:
        return "/"
    if not value.startswith("/"):
        value = "/" + value
    if value == API_V1_PREFIX:
        return "/"
    if value.startswith(API_V1_PREFIX + "/"):
        value = value[len(API_V1_PREFIX):]
    return value


def normalize_action(raw: str) -> str:
    """Uppercase and trim an HTTP verb. ``*`` is kept as is."""
    return (raw or "").strip().upper()


def normalize_role(raw: str) -> str:
    """Render a role name as ``role:<name>``.

    Spaces inside the name become underscores. An already prefixed name is
    returned unchanged.

    Raises:
        InvalidRoleError: If nothing is left after trimming.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidRoleError("role name is empty")
    value = value.replace(" ", "_")
    if not value.startswith(ROLE_PREFIX):
        value = ROLE_PREFIX + value
    if value == ROLE_PREFIX:
        raise InvalidRoleError("role name is empty")
    return value


def role_display_name(role: str) -> str:
    """Strip the ``role:`` prefix for presentation."""
    if role.startswith(ROLE_PREFIX):
        return role[len(ROLE_PREFIX):]
    return role


def is_role_subject(subject: str) -> bool:
    return subject.startswith(ROLE_PREFIX)


def subject_for_principal(kind: str, principal_id: int) -> str:
    """Build the policy subject for a principal, e.g. ``admin:42``."""
    return f"{kind}:{principal_id}"


def subject_for_admin(admin_id: int) -> str:
    return subject_for_principal(ADMIN_KIND, admin_id)

"""
Role-Based Access Control (RBAC) for PharmDesk.

Defines which staff role may perform which desk operation.  The lock
flag is a separate, per-record restriction enforced by the lifecycle
engine; this table only answers "may this role attempt the action at all".

**Roles:**

* SUPER_ADMIN -- top-privilege role; manages staff and record locks.
* DOCTOR      -- reviews consultations and sourcing requests.
* PHARMACIST  -- reviews consultations and sourcing requests.
* GUEST       -- unauthenticated visitor; may only submit public forms.
"""

from __future__ import annotations

from pharmdesk.errors import AuthorizationError
from pharmdesk.models import AuthContext, UserRole


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

_STAFF_ACTIONS = {
    "view_records",
    "update_request_status",
    "update_consult_status",
    "trigger_enrichment",
    "view_audit",
    "view_staff",
}

_ADMIN_ONLY_ACTIONS = {
    "toggle_lock",
    "provision_staff",
    "manage_staff",
    "issue_reset_token",
}

_PUBLIC_ACTIONS = {
    "submit_request",
    "submit_consultation",
}

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[UserRole, str], bool] = {}
for _role in UserRole:
    for _action in _PUBLIC_ACTIONS:
        _PERMISSIONS[(_role, _action)] = True
    for _action in _STAFF_ACTIONS:
        _PERMISSIONS[(_role, _action)] = _role != UserRole.GUEST
    for _action in _ADMIN_ONLY_ACTIONS:
        _PERMISSIONS[(_role, _action)] = _role == UserRole.SUPER_ADMIN


def check_permission(role: UserRole, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Unknown actions are denied.
    """
    return _PERMISSIONS.get((role, action), False)


def require_permission(ctx: AuthContext, action: str) -> None:
    """Enforce a permission check for the acting identity.

    Raises:
        AuthorizationError: If the actor's role is not permitted.
    """
    if not check_permission(ctx.role, action):
        raise AuthorizationError(
            f"Role '{ctx.role.value}' is not permitted to perform '{action}'. "
            "Ask an administrator if you need this access.",
            detail={"role": ctx.role.value, "action": action},
        )


def get_permissions_for_role(role: UserRole) -> dict[str, bool]:
    """Return all permissions for a given role."""
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }

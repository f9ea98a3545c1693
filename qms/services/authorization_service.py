"""
Authorization Service — effective permissions and point access checks.

Effective permissions of a user are the union of:
  (a) the dotted strings mapped from every role's permission bitmask,
  (b) derived ``<Resource>.ViewAll`` grants when any role sits in a
      hierarchy tier (executive, deputy, manager) and the roles already hold
      the base Read flag for that resource,
  (c) permissions from active, unexpired delegations.

Results are cached per user (``qms:perms:<id>``, 5 min). Role names
are cached separately (``qms:roles:<id>``).

Failure semantics:
  - delegation table not provisioned → warning, no delegated permissions
  - any other error while resolving → error log, EMPTY set (fail closed)

Usage:
    from qms.services import authorization_service as authz

    if authz.has_permission(user_id, "Documents.Approve"): ...
    authz.authorize(user_id, "Capa.Delete")      # raises AuthorizationError
"""

from __future__ import annotations

import logging

from qms.core.exceptions import AuthorizationError, SchemaNotReadyError
from qms.models import db
from qms.models.auth import Role, User, UserRole
from qms.models.delegation import valid_delegated_permissions
from qms.services import cache_service, hierarchy_service
from qms.services.permission_mapper import to_application_permissions, view_all_for_flags
from qms.services.role_tiers import HIERARCHY_TIERS, RoleTier, highest_tier, role_tier

logger = logging.getLogger(__name__)


# ── Resolution (uncached) ───────────────────────────────────────────────────


def _user_roles(user_id: int) -> list[Role]:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return []
    return (
        Role.query.join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .all()
    )


def role_permissions(roles) -> set[str]:
    """Mapped role permissions plus derived ViewAll grants."""
    combined = 0
    hierarchy_role = False
    for role in roles:
        combined |= int(role.permissions or 0)
        if role_tier(role) in HIERARCHY_TIERS:
            hierarchy_role = True
    perms = to_application_permissions(combined)
    if hierarchy_role:
        perms |= view_all_for_flags(combined)
    return perms


def _delegated_permissions(user_id: int) -> set[str]:
    try:
        return valid_delegated_permissions(user_id)
    except SchemaNotReadyError as exc:
        logger.warning(
            "Delegation table not provisioned (%s); ignoring delegated permissions for user %s",
            exc.table, user_id,
        )
        return set()


def compute_permissions(user_id: int) -> set[str]:
    """Resolve role + ViewAll + delegated permissions straight from the DB.

    Shared by the cached path and by delegation checks, which must not read
    through the cache of the user they are about to change.
    """
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return set()
    perms = role_permissions(_user_roles(user_id))
    perms |= _delegated_permissions(user_id)
    return perms


# ── Cached queries ──────────────────────────────────────────────────────────


def get_effective_permissions(user_id: int | None) -> set[str]:
    if user_id is None:
        return set()
    try:
        return cache_service.get_cached_permissions(user_id, lambda: compute_permissions(user_id))
    except Exception:
        logger.error("Permission resolution failed for user %s; denying", user_id, exc_info=True)
        return set()


def get_user_roles(user_id: int | None) -> set[str]:
    if user_id is None:
        return set()
    try:
        return cache_service.get_cached_roles(
            user_id, lambda: {r.name for r in _user_roles(user_id)},
        )
    except Exception:
        logger.error("Role resolution failed for user %s", user_id, exc_info=True)
        return set()


def get_user_tier(user_id: int | None) -> RoleTier:
    """Highest privilege tier across the user's roles (``staff`` if none)."""
    if user_id is None:
        return RoleTier.STAFF
    return highest_tier(role_tier(r) for r in _user_roles(user_id))


def is_in_role(user_id: int, role_name: str) -> bool:
    wanted = (role_name or "").strip().lower()
    return any(name.lower() == wanted for name in get_user_roles(user_id))


def has_permission(user_id: int, permission: str) -> bool:
    return permission in get_effective_permissions(user_id)


def has_any_permission(user_id: int, permissions) -> bool:
    return bool(get_effective_permissions(user_id) & set(permissions))


def has_all_permissions(user_id: int, permissions) -> bool:
    return set(permissions).issubset(get_effective_permissions(user_id))


def can_access_resource(user_id: int, resource_type: str, resource_id=None, action: str = "View") -> bool:
    """Check ``{resource_type}.{action}``; reads also pass with ``{resource_type}.ViewAll``.

    *resource_id* is accepted for call-site symmetry and audit logging;
    ownership rules live in the visibility service.
    """
    perms = get_effective_permissions(user_id)
    if f"{resource_type}.{action}" in perms:
        return True
    if action == "View" and f"{resource_type}.ViewAll" in perms:
        return True
    return False


def can_view_user_data(user_id: int, target_user_id: int) -> bool:
    """Self, OR Users.ViewAll, OR target is a subordinate."""
    if user_id == target_user_id:
        return True
    if has_permission(user_id, "Users.ViewAll"):
        return True
    return hierarchy_service.is_subordinate(user_id, target_user_id)


def can_view_subordinate_data(user_id: int, subordinate_id: int) -> bool:
    """Self, OR (Users.ViewAll AND subordinate). ViewAll alone is not enough."""
    if user_id == subordinate_id:
        return True
    if not has_permission(user_id, "Users.ViewAll"):
        return False
    return hierarchy_service.is_subordinate(user_id, subordinate_id)


def can_delegate_permission(delegator_id: int, subordinate_id: int, permission: str) -> bool:
    """All three: delegator holds *permission*, target is a true subordinate, target ≠ delegator."""
    if delegator_id is None or subordinate_id is None or delegator_id == subordinate_id:
        return False
    try:
        held = compute_permissions(delegator_id)
    except Exception:
        logger.error("Could not resolve permissions of delegator %s", delegator_id, exc_info=True)
        return False
    if permission not in held:
        return False
    return hierarchy_service.is_subordinate(delegator_id, subordinate_id)


def authorize(user_id: int, permission: str, message: str | None = None) -> None:
    """Guard: raise AuthorizationError unless *user_id* holds *permission*."""
    if not has_permission(user_id, permission):
        logger.warning("User %s denied: missing permission '%s'", user_id, permission)
        raise AuthorizationError(permission=permission, user_id=user_id, message=message)


# ── Invalidation ────────────────────────────────────────────────────────────


def invalidate_user(user_id: int) -> None:
    cache_service.invalidate_user_cache(user_id)


def invalidate_all_cache() -> None:
    cache_service.clear_all()

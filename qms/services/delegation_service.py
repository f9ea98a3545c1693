"""
Kasah QMS
Permission Delegation Service — bounded, revocable, downward-only grants.

Rules:
    - The delegator must currently hold the permission (roles or their own
      valid delegations), the grantee must be a direct or recursive
      subordinate, and self-delegation is refused.
    - One row per (grantee, permission): delegating again reactivates and
      re-dates the existing row instead of inserting a duplicate.
    - Only the delegator revokes. ``force=True`` is the administrative
      override and needs ``Users.ManageRoles``.

Every create/revoke writes an audit row, notifies the grantee and
invalidates the grantee's permission cache.

Usage:
    from qms.services import delegation_service

    res = delegation_service.delegate(mgr.id, staff.id, "Documents.Approve", expires_after_days=7)
    if not res:
        return jsonify(res.to_dict()), res.http_status
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from qms.core.exceptions import SchemaNotReadyError
from qms.core.result import OperationResult
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import User
from qms.models.delegation import UserPermissionDelegation, valid_delegated_permissions
from qms.services import authorization_service
from qms.services.notification import NotificationService
from qms.services.permission_mapper import all_application_permissions

logger = logging.getLogger(__name__)

FORCE_REVOKE_PERMISSION = "Users.ManageRoles"


# ═════════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════════


def can_delegate_permission(delegator_id: int, subordinate_id: int, permission: str) -> bool:
    """Re-derive the delegator's rights from the database, bypassing the cache."""
    return authorization_service.can_delegate_permission(delegator_id, subordinate_id, permission)


def get_delegated_permissions(user_id: int) -> set[str]:
    """Permission strings from active, unexpired delegations to *user_id*."""
    try:
        return valid_delegated_permissions(user_id)
    except SchemaNotReadyError:
        logger.warning("Delegation table not provisioned; user %s has no delegated permissions", user_id)
        return set()


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════


def delegate(
    delegator_id: int,
    subordinate_id: int,
    permission: str,
    expires_after_days: int | None = None,
) -> OperationResult:
    """Grant *permission* to *subordinate_id* (create or reactivate)."""
    permission = (permission or "").strip()
    if permission not in all_application_permissions():
        return OperationResult.fail(
            "Delegation.InvalidPermission", f"Unknown permission '{permission}'.",
        )
    if expires_after_days is not None:
        try:
            expires_after_days = int(expires_after_days)
        except (TypeError, ValueError):
            expires_after_days = 0
        if expires_after_days <= 0:
            return OperationResult.fail(
                "Delegation.InvalidExpiry", "Expiry must be a positive number of days.",
            )
    if not can_delegate_permission(delegator_id, subordinate_id, permission):
        return OperationResult.fail(
            "Delegation.NotAllowed",
            "You cannot delegate this permission. Ensure you have the permission "
            "and the target is your subordinate.",
        )

    delegator = db.session.get(User, delegator_id)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(days=int(expires_after_days)) if expires_after_days else None

    try:
        existing = UserPermissionDelegation.query.filter_by(
            user_id=subordinate_id, permission=permission,
        ).first()
        if existing is not None:
            existing.is_active = True
            existing.delegated_by_id = delegator_id
            existing.delegated_at = now
            existing.expires_at = expires_at
            existing.revoked_at = None
            existing.revoked_by_id = None
            delegation = existing
            created = False
        else:
            delegation = UserPermissionDelegation(
                tenant_id=delegator.tenant_id,
                user_id=subordinate_id,
                delegated_by_id=delegator_id,
                permission=permission,
                delegated_at=now,
                expires_at=expires_at,
                is_active=True,
            )
            db.session.add(delegation)
            created = True
        db.session.flush()

        write_audit(
            entity_type="delegation",
            entity_id=delegation.id,
            action="delegation.create",
            actor_user_id=delegator_id,
            tenant_id=delegation.tenant_id,
            diff={
                "user_id": subordinate_id,
                "permission": permission,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "reactivated": not created,
            },
        )
        NotificationService.notify(
            subordinate_id,
            f"Permission delegated: {permission}",
            f"{delegator.full_name} delegated '{permission}' to you"
            + (f" until {expires_at:%Y-%m-%d}." if expires_at else "."),
            entity_type="delegation", entity_id=delegation.id,
            category="delegation", tenant_id=delegation.tenant_id,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(
            "Failed to delegate %s from %s to %s", permission, delegator_id, subordinate_id,
            exc_info=True,
        )
        return OperationResult.fail("Delegation.Failed", "Failed to delegate permission.")

    authorization_service.invalidate_user(subordinate_id)
    logger.info(
        "Permission %s delegated from %s to %s", permission, delegator_id, subordinate_id,
        extra={"tenant_id": delegation.tenant_id, "user_id": delegator_id,
               "delegation_id": delegation.id},
    )
    return OperationResult.ok(delegation)


def revoke(actor_id: int, delegation_id: int, force: bool = False) -> OperationResult:
    """Deactivate a delegation. Delegator only, unless an admin forces it."""
    delegation = db.session.get(UserPermissionDelegation, delegation_id)
    actor = db.session.get(User, actor_id)
    if delegation is None or actor is None or delegation.tenant_id != actor.tenant_id:
        return OperationResult.fail("Delegation.NotFound", "Delegation not found.")

    if delegation.delegated_by_id != actor_id:
        if not force:
            return OperationResult.fail(
                "Delegation.Forbidden", "Only the delegator can revoke this delegation.",
            )
        if not authorization_service.has_permission(actor_id, FORCE_REVOKE_PERMISSION):
            logger.warning("User %s attempted force-revoke of delegation %s", actor_id, delegation_id)
            return OperationResult.fail(
                "Delegation.Forbidden", "Only role administrators can force-revoke a delegation.",
            )

    try:
        delegation.is_active = False
        delegation.revoked_at = datetime.now(timezone.utc)
        delegation.revoked_by_id = actor_id
        write_audit(
            entity_type="delegation",
            entity_id=delegation.id,
            action="delegation.revoke",
            actor_user_id=actor_id,
            tenant_id=delegation.tenant_id,
            diff={"user_id": delegation.user_id, "permission": delegation.permission,
                  "forced": delegation.delegated_by_id != actor_id},
        )
        NotificationService.notify(
            delegation.user_id,
            f"Delegation revoked: {delegation.permission}",
            f"Your delegated permission '{delegation.permission}' was revoked.",
            entity_type="delegation", entity_id=delegation.id,
            category="delegation", tenant_id=delegation.tenant_id,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Failed to revoke delegation %s", delegation_id, exc_info=True)
        return OperationResult.fail("Delegation.RevokeFailed", "Failed to revoke delegation.")

    authorization_service.invalidate_user(delegation.user_id)
    logger.info(
        "Delegation %s revoked by %s", delegation_id, actor_id,
        extra={"tenant_id": delegation.tenant_id, "user_id": actor_id,
               "delegation_id": delegation_id},
    )
    return OperationResult.ok(delegation)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_my_delegations(delegator_id: int) -> list[UserPermissionDelegation]:
    """Delegations granted BY the user, newest first."""
    return (
        UserPermissionDelegation.query.filter_by(delegated_by_id=delegator_id)
        .order_by(UserPermissionDelegation.delegated_at.desc())
        .all()
    )


def get_received_delegations(user_id: int) -> list[UserPermissionDelegation]:
    """Delegations granted TO the user, newest first."""
    return (
        UserPermissionDelegation.query.filter_by(user_id=user_id)
        .order_by(UserPermissionDelegation.delegated_at.desc())
        .all()
    )

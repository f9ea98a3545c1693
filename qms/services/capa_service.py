"""
Kasah QMS
CAPA Service — role-gated, forward-only corrective/preventive action lifecycle.

Who may do what (by highest role tier):

    tier        create   edit/advance      delete (before verification)
    ─────────   ──────   ───────────────   ────────────────────────────
    admin       yes      any               any
    executive   yes      any               any
    deputy      yes      any               own only
    manager     yes      own only          own only
    auditor     no       no (read-only)    no
    staff       no       no                no

Segregation of duties: whoever moves a CAPA into ``effectiveness_verified``
must not be its creator, whatever their tier.

Denials return ``OperationResult`` failures carrying a message that names
the role rule, so the UI can explain the refusal.
"""

from __future__ import annotations

import logging

from qms.core.result import OperationResult
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import User
from qms.models.capa import CAPA_PRIORITIES, CAPA_TYPES, Capa, CapaAction
from qms.services import authorization_service as authz
from qms.services.notification import NotificationService
from qms.services.role_tiers import MANAGER_AND_ABOVE, RoleTier
from qms.utils.helpers import commit_or_stale, parse_date, utcnow

logger = logging.getLogger(__name__)

EDIT_ANY_TIERS = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE, RoleTier.DEPUTY})
DELETE_ANY_TIERS = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE})

SELF_VERIFY_MESSAGE = "You cannot verify effectiveness of a CAPA you created."

EDITABLE_FIELDS = (
    "title", "description", "capa_type", "priority", "owner_id", "target_completion_date",
    "root_cause_analysis", "immediate_containment", "corrective_action_plan",
    "preventive_action_plan", "source_audit_id",
)


# ── Helpers ─────────────────────────────────────────────────────────────────


def _not_found():
    return OperationResult.fail("Capa.NotFound", "CAPA not found.")


def _load(actor_id, capa_id):
    actor = db.session.get(User, actor_id)
    capa = db.session.get(Capa, capa_id) if capa_id is not None else None
    if actor is None or capa is None or capa.tenant_id != actor.tenant_id:
        return actor, None
    return actor, capa


def _validate_fields(tenant_id, data):
    if "title" in data and not (data.get("title") or "").strip():
        return "Title is required."
    if data.get("capa_type") is not None and data["capa_type"] not in CAPA_TYPES:
        return f"Invalid CAPA type. Must be one of: {', '.join(sorted(CAPA_TYPES))}"
    if data.get("priority") is not None and data["priority"] not in CAPA_PRIORITIES:
        return f"Invalid priority. Must be one of: {', '.join(sorted(CAPA_PRIORITIES))}"
    if data.get("owner_id") is not None:
        owner = db.session.get(User, data["owner_id"])
        if owner is None or owner.tenant_id != tenant_id:
            return "Owner not found."
    if data.get("target_completion_date") and parse_date(data["target_completion_date"]) is None:
        return "Invalid target completion date."
    return None


def _log_ctx(capa, actor_id):
    return {"tenant_id": capa.tenant_id, "user_id": actor_id, "capa_id": capa.id}


# ═════════════════════════════════════════════════════════════════════════════
# Role rules
# ═════════════════════════════════════════════════════════════════════════════


def create_permission(user_id: int) -> tuple[bool, str]:
    tier = authz.get_user_tier(user_id)
    if tier == RoleTier.AUDITOR:
        return False, "Auditors cannot create CAPAs. This is a read-only role."
    if tier in MANAGER_AND_ABOVE or authz.has_permission(user_id, "Capa.Create"):
        return True, ""
    return False, (
        "You do not have permission to create CAPAs. Only TMD, Deputies, "
        "Department Managers, and System Admins can create CAPAs."
    )


def edit_permission(user_id: int, capa: Capa) -> tuple[bool, str]:
    """(allowed, reason) for edit and advance."""
    tier = authz.get_user_tier(user_id)
    if tier in EDIT_ANY_TIERS:
        return True, ""
    if tier == RoleTier.MANAGER:
        if capa.created_by_id == user_id:
            return True, ""
        return False, "Department Managers can only edit CAPAs they created."
    if tier == RoleTier.AUDITOR:
        return False, "Auditors cannot edit CAPAs. This is a read-only role."
    return False, "You do not have permission to edit this CAPA."


def delete_permission(user_id: int, capa: Capa) -> tuple[bool, str]:
    if not capa.can_be_deleted:
        return False, "Cannot delete CAPA that has been verified or closed."
    tier = authz.get_user_tier(user_id)
    if tier in DELETE_ANY_TIERS:
        return True, ""
    if tier in (RoleTier.DEPUTY, RoleTier.MANAGER) and capa.created_by_id == user_id:
        return True, ""
    if tier == RoleTier.AUDITOR:
        return False, "Auditors have read-only access."
    return False, "You do not have permission to delete this CAPA."


def can_create_capa(user_id: int) -> bool:
    return create_permission(user_id)[0]


def can_edit_capa(user_id: int, capa: Capa) -> bool:
    return edit_permission(user_id, capa)[0]


def can_delete_capa(user_id: int, capa: Capa) -> bool:
    return delete_permission(user_id, capa)[0]


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════


def create_capa(actor_id: int, data: dict) -> OperationResult:
    actor = db.session.get(User, actor_id)
    if actor is None:
        return OperationResult.fail("Capa.Forbidden", "Unknown user.")
    allowed, reason = create_permission(actor_id)
    if not allowed:
        logger.warning("User %s denied CAPA creation: %s", actor_id, reason)
        return OperationResult.fail("Capa.Forbidden", reason)
    if not (data.get("title") or "").strip():
        return OperationResult.fail("Capa.ValidationFailed", "Title is required.")
    error = _validate_fields(actor.tenant_id, data)
    if error:
        return OperationResult.fail("Capa.ValidationFailed", error)

    capa = Capa(
        tenant_id=actor.tenant_id,
        capa_number=Capa.next_number(actor.tenant_id, "CAPA"),
        title=data["title"].strip(),
        description=data.get("description"),
        capa_type=data.get("capa_type") or "corrective",
        priority=data.get("priority") or "medium",
        status="draft",
        source_audit_id=data.get("source_audit_id"),
        source_document_id=data.get("source_document_id"),
        owner_id=data.get("owner_id") or actor_id,
        created_by_id=actor_id,
        target_completion_date=parse_date(data.get("target_completion_date")),
        root_cause_analysis=data.get("root_cause_analysis"),
        immediate_containment=data.get("immediate_containment"),
        corrective_action_plan=data.get("corrective_action_plan"),
        preventive_action_plan=data.get("preventive_action_plan"),
    )
    db.session.add(capa)
    db.session.flush()
    write_audit(
        entity_type="capa", entity_id=capa.id, action="capa.create",
        actor_user_id=actor_id, tenant_id=capa.tenant_id,
        diff={"title": capa.title, "priority": capa.priority},
    )
    if capa.owner_id != actor_id:
        NotificationService.notify(
            capa.owner_id, "CAPA Assigned", f"{capa.capa_number}: {capa.title}",
            entity_type="capa", entity_id=capa.id, category="capa", tenant_id=capa.tenant_id,
        )
    db.session.commit()
    logger.info("CAPA %s created", capa.capa_number, extra=_log_ctx(capa, actor_id))
    return OperationResult.ok(capa, message=f"CAPA '{capa.title}' created")


def update_capa(actor_id: int, capa_id: int, changes: dict, expected_version: int | None = None) -> OperationResult:
    actor, capa = _load(actor_id, capa_id)
    if capa is None:
        return _not_found()
    capa.check_version(expected_version)
    allowed, reason = edit_permission(actor_id, capa)
    if not allowed:
        return OperationResult.fail("Capa.Forbidden", reason)
    if capa.is_closed:
        return OperationResult.fail("Capa.InvalidState", "Closed CAPAs cannot be edited.")

    updates = {k: changes[k] for k in EDITABLE_FIELDS if k in changes}
    error = _validate_fields(capa.tenant_id, updates)
    if error:
        return OperationResult.fail("Capa.ValidationFailed", error)

    changed = []
    for field, value in updates.items():
        if field == "target_completion_date":
            value = parse_date(value)
        elif field == "title":
            value = value.strip()
        if getattr(capa, field) != value:
            setattr(capa, field, value)
            changed.append(field)
    if changed:
        write_audit(
            entity_type="capa", entity_id=capa.id, action="capa.update",
            actor_user_id=actor_id, tenant_id=capa.tenant_id, diff={"fields": changed},
        )
        commit_or_stale(capa)
        logger.info(
            "CAPA %s updated. Changes: %s", capa.capa_number, ", ".join(changed),
            extra=_log_ctx(capa, actor_id),
        )
    return OperationResult.ok(capa, message="CAPA updated successfully.")


def advance_capa(
    actor_id: int,
    capa_id: int,
    notes: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """Move the CAPA exactly one step forward."""
    actor, capa = _load(actor_id, capa_id)
    if capa is None:
        return _not_found()
    capa.check_version(expected_version)
    allowed, reason = edit_permission(actor_id, capa)
    if not allowed:
        return OperationResult.fail("Capa.Forbidden", reason)

    nxt = capa.get_next_status()
    if nxt is None:
        return OperationResult.fail("Capa.InvalidState", "CAPA cannot be advanced further.")
    if nxt == "effectiveness_verified" and capa.created_by_id == actor_id:
        logger.warning("User %s attempted to verify own CAPA %s", actor_id, capa.id)
        return OperationResult.fail("Capa.SelfVerification", SELF_VERIFY_MESSAGE)

    previous = capa.status
    capa.advance_status()
    now = utcnow()
    if capa.status == "effectiveness_verified":
        capa.verified_by_id = actor_id
        capa.verified_at = now
        capa.is_effective = True if capa.is_effective is None else capa.is_effective
        if notes:
            capa.verification_notes = notes
    elif capa.status == "closed":
        capa.closed_by_id = actor_id
        capa.closed_at = now
        capa.closure_notes = notes

    write_audit(
        entity_type="capa", entity_id=capa.id, action="capa.advance",
        actor_user_id=actor_id, tenant_id=capa.tenant_id,
        diff={"status": [previous, capa.status]},
    )
    if capa.owner_id and capa.owner_id != actor_id:
        NotificationService.notify(
            capa.owner_id, f"CAPA {capa.capa_number} advanced",
            f"Status changed from {previous} to {capa.status}.",
            entity_type="capa", entity_id=capa.id, category="capa", tenant_id=capa.tenant_id,
        )
    commit_or_stale(capa)
    logger.info(
        "CAPA %s status advanced from %s to %s", capa.capa_number, previous, capa.status,
        extra=_log_ctx(capa, actor_id),
    )
    return OperationResult.ok(capa)


def verify_effectiveness(
    actor_id: int,
    capa_id: int,
    is_effective: bool,
    notes: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """Record the effectiveness check of an implemented CAPA.

    Effective → advances to ``effectiveness_verified``. Not effective → the
    finding is recorded and the CAPA stays at ``actions_implemented``.
    """
    actor, capa = _load(actor_id, capa_id)
    if capa is None:
        return _not_found()
    capa.check_version(expected_version)
    if capa.status != "actions_implemented":
        return OperationResult.fail(
            "Capa.InvalidState", "Only CAPAs with implemented actions can be verified.",
        )
    if capa.created_by_id == actor_id:
        return OperationResult.fail("Capa.SelfVerification", SELF_VERIFY_MESSAGE)
    if not (can_edit_capa(actor_id, capa) or authz.has_permission(actor_id, "Capa.Verify")):
        return OperationResult.fail("Capa.Forbidden", "You do not have permission to verify this CAPA.")

    if not is_effective:
        capa.is_effective = False
        capa.verification_notes = notes
        write_audit(
            entity_type="capa", entity_id=capa.id, action="capa.verify",
            actor_user_id=actor_id, tenant_id=capa.tenant_id, diff={"is_effective": False},
        )
        commit_or_stale(capa)
        logger.info("CAPA %s verified as not effective", capa.capa_number, extra=_log_ctx(capa, actor_id))
        return OperationResult.ok(capa, message="Verification recorded; the CAPA remains open.")

    capa.is_effective = True
    capa.verification_notes = notes
    capa.advance_status()
    capa.verified_by_id = actor_id
    capa.verified_at = utcnow()
    write_audit(
        entity_type="capa", entity_id=capa.id, action="capa.verify",
        actor_user_id=actor_id, tenant_id=capa.tenant_id,
        diff={"is_effective": True, "status": ["actions_implemented", capa.status]},
    )
    commit_or_stale(capa)
    logger.info("CAPA %s verified effective", capa.capa_number, extra=_log_ctx(capa, actor_id))
    return OperationResult.ok(capa)


def delete_capa(actor_id: int, capa_id: int) -> OperationResult:
    actor, capa = _load(actor_id, capa_id)
    if capa is None:
        return _not_found()
    allowed, reason = delete_permission(actor_id, capa)
    if not allowed:
        code = "Capa.InvalidState" if not capa.can_be_deleted else "Capa.Forbidden"
        return OperationResult.fail(code, reason)

    number, tenant_id = capa.capa_number, capa.tenant_id
    write_audit(
        entity_type="capa", entity_id=capa.id, action="capa.delete",
        actor_user_id=actor_id, tenant_id=tenant_id, diff={"capa_number": number},
    )
    db.session.delete(capa)
    db.session.commit()
    logger.info("CAPA %s deleted", number, extra={"tenant_id": tenant_id, "user_id": actor_id})
    return OperationResult.ok(message=f"CAPA {number} deleted")


# ── Actions ─────────────────────────────────────────────────────────────────


def add_capa_action(actor_id: int, capa_id: int, data: dict) -> OperationResult:
    actor, capa = _load(actor_id, capa_id)
    if capa is None:
        return _not_found()
    allowed, reason = edit_permission(actor_id, capa)
    if not allowed:
        return OperationResult.fail("Capa.Forbidden", reason)
    if capa.is_closed:
        return OperationResult.fail("Capa.InvalidState", "Cannot add actions to a closed CAPA.")
    description = (data.get("description") or "").strip()
    if not description:
        return OperationResult.fail("Capa.ValidationFailed", "Action description is required.")
    action_type = data.get("action_type") or "corrective"
    if action_type not in ("corrective", "preventive"):
        return OperationResult.fail("Capa.ValidationFailed", "Action type must be corrective or preventive.")
    assignee_id = data.get("assignee_id")
    if assignee_id is not None:
        assignee = db.session.get(User, assignee_id)
        if assignee is None or assignee.tenant_id != capa.tenant_id:
            return OperationResult.fail("Capa.ValidationFailed", "Assignee not found.")

    action = CapaAction(
        capa_id=capa.id,
        description=description,
        action_type=action_type,
        assignee_id=assignee_id,
        due_date=parse_date(data.get("due_date")),
        status="pending",
    )
    db.session.add(action)
    db.session.flush()
    if assignee_id and assignee_id != actor_id:
        NotificationService.notify(
            assignee_id, f"CAPA action assigned: {capa.capa_number}", description,
            entity_type="capa", entity_id=capa.id, category="capa", tenant_id=capa.tenant_id,
        )
    db.session.commit()
    logger.info("Action %s added to CAPA %s", action.id, capa.capa_number, extra=_log_ctx(capa, actor_id))
    return OperationResult.ok(action)


def complete_capa_action(actor_id: int, action_id: int, notes: str | None = None) -> OperationResult:
    action = db.session.get(CapaAction, action_id)
    actor = db.session.get(User, actor_id)
    if action is None or actor is None or action.capa.tenant_id != actor.tenant_id:
        return OperationResult.fail("Capa.NotFound", "CAPA action not found.")
    if action.status == "completed":
        return OperationResult.fail("Capa.InvalidState", "Action is already completed.")
    if action.assignee_id != actor_id and not can_edit_capa(actor_id, action.capa):
        return OperationResult.fail(
            "Capa.Forbidden", "Only the assignee or a CAPA editor can complete this action.",
        )
    action.status = "completed"
    action.completed_at = utcnow()
    action.completion_notes = notes
    db.session.commit()
    logger.info(
        "CAPA action %s completed", action.id,
        extra={"tenant_id": actor.tenant_id, "user_id": actor_id, "capa_id": action.capa_id},
    )
    return OperationResult.ok(action)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_capas(user_id: int, status: str | None = None) -> list[Capa]:
    """Readers of ``Capa.View`` see the tenant register; others see CAPAs they own or raised."""
    user = db.session.get(User, user_id)
    if user is None:
        return []
    q = Capa.query_for_tenant(user.tenant_id)
    if not authz.has_any_permission(user_id, ("Capa.View", "Capa.ViewAll")):
        q = q.filter((Capa.owner_id == user_id) | (Capa.created_by_id == user_id))
    if status:
        q = q.filter(Capa.status == status)
    return q.order_by(Capa.created_at.desc(), Capa.id.desc()).all()


def get_capa(user_id: int, capa_id: int) -> OperationResult:
    actor, capa = _load(user_id, capa_id)
    if capa is None:
        return _not_found()
    if not authz.has_any_permission(user_id, ("Capa.View", "Capa.ViewAll")) and user_id not in (
        capa.owner_id, capa.created_by_id,
    ):
        return _not_found()
    return OperationResult.ok(capa)

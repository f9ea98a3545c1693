"""
Kasah QMS
Task Service — assignable work items with a completion sign-off.

Lifecycle (``qms.models.task.TASK_TRANSITIONS``):

    open ──start/assign──► in_progress ──complete──► awaiting_approval ──approve──► completed
                               ▲                            │
                               └──────── start ◄── rejected ◄┘ reject
    open / in_progress / rejected / overdue ──cancel──► cancelled

``overdue`` is derived from ``due_at`` on read; ``mark_overdue_tasks`` is the
scheduled sweep that persists it.

Actors:
    - create: manager tier and above
    - edit / delete / cancel: the creator, before completion or cancellation
    - assign: the creator or a holder of ``Tasks.Assign``
    - start / activity / complete: the assignee
    - approve / reject completion: manager tier and above, never the assignee
    - auditors: read-only everywhere
"""

from __future__ import annotations

import logging

from qms.core.result import OperationResult
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import OrganizationUnit, User
from qms.models.capa import Capa
from qms.models.document import Document
from qms.models.task import (
    NOT_OVERDUE_STATUSES,
    TASK_PRIORITIES,
    TERMINAL_STATUSES,
    QmsTask,
    TaskActivity,
    validate_task_transition,
)
from qms.services import authorization_service as authz
from qms.services import hierarchy_service, visibility_service
from qms.services.notification import NotificationService
from qms.services.role_tiers import MANAGER_AND_ABOVE, RoleTier
from qms.utils.helpers import commit_or_stale, parse_datetime, utcnow

logger = logging.getLogger(__name__)

AUDITOR_READ_ONLY = "Auditors have read-only access."

EDITABLE_FIELDS = (
    "title", "description", "priority", "due_at", "tags",
    "linked_document_id", "linked_capa_id", "linked_audit_id",
)


# ── Helpers ─────────────────────────────────────────────────────────────────


def _not_found():
    return OperationResult.fail("Task.NotFound", "Task not found.")


def _load(actor_id, task_id):
    actor = db.session.get(User, actor_id)
    task = db.session.get(QmsTask, task_id) if task_id is not None else None
    if actor is None or task is None or task.tenant_id != actor.tenant_id:
        return actor, None
    return actor, task


def _is_auditor(user_id):
    return authz.get_user_tier(user_id) == RoleTier.AUDITOR


def _in_tenant(model, pk, tenant_id):
    if pk is None:
        return True
    obj = db.session.get(model, pk)
    return obj is not None and obj.tenant_id == tenant_id


def _validate_fields(tenant_id, data):
    if "title" in data and not (data.get("title") or "").strip():
        return "Title is required."
    if data.get("priority") is not None and data["priority"] not in TASK_PRIORITIES:
        return f"Invalid priority. Must be one of: {', '.join(sorted(TASK_PRIORITIES))}"
    if data.get("due_at") and parse_datetime(data["due_at"]) is None:
        return "Invalid due date."
    if data.get("tags") is not None and not isinstance(data["tags"], list):
        return "Tags must be a list."
    if not _in_tenant(Document, data.get("linked_document_id"), tenant_id):
        return "Linked document not found."
    if not _in_tenant(Capa, data.get("linked_capa_id"), tenant_id):
        return "Linked CAPA not found."
    return None


def _notify_assignment(task, actor_id):
    title = f"Task assigned: {task.title}"
    message = f"{task.task_number} has been assigned to you."
    if task.assigned_to_id and task.assigned_to_id != actor_id:
        NotificationService.notify(
            task.assigned_to_id, title, message,
            entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
        )
    elif task.assigned_to_org_unit_id:
        members = hierarchy_service.get_department_user_ids(task.assigned_to_org_unit_id)
        members.discard(actor_id)
        NotificationService.notify_many(
            sorted(members), title, f"{task.task_number} has been assigned to your department.",
            entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
        )


def _log_ctx(task, actor_id):
    return {"tenant_id": task.tenant_id, "user_id": actor_id, "task_id": task.id}


# ═════════════════════════════════════════════════════════════════════════════
# Role rules
# ═════════════════════════════════════════════════════════════════════════════


def create_permission(user_id: int) -> tuple[bool, str]:
    tier = authz.get_user_tier(user_id)
    if tier == RoleTier.AUDITOR:
        return False, "Auditors cannot create tasks. Only managers can assign work."
    if tier not in MANAGER_AND_ABOVE:
        return False, "Only managers can create tasks. Contact your manager to assign work."
    return True, ""


def can_create_task(user_id: int) -> bool:
    return create_permission(user_id)[0]


def can_edit_task(user_id: int, task: QmsTask) -> bool:
    return (
        task is not None
        and task.created_by_id == user_id
        and task.status not in TERMINAL_STATUSES
        and not _is_auditor(user_id)
    )


def can_approve_task(user_id: int, task: QmsTask) -> bool:
    return (
        task is not None
        and task.status == "awaiting_approval"
        and task.assigned_to_id != user_id
        and authz.get_user_tier(user_id) in MANAGER_AND_ABOVE
    )


# ═════════════════════════════════════════════════════════════════════════════
# Create / edit / delete
# ═════════════════════════════════════════════════════════════════════════════


def create_task(actor_id: int, data: dict) -> OperationResult:
    """Create one task per target user, or one org-unit task.

    Targets: ``assigned_to_id``, ``assignee_ids`` (list) and/or
    ``assigned_to_org_unit_id``. ``value`` is the list of created tasks.
    """
    actor = db.session.get(User, actor_id)
    if actor is None:
        return OperationResult.fail("Task.Forbidden", "Unknown user.")
    allowed, reason = create_permission(actor_id)
    if not allowed:
        logger.warning("User %s denied task creation: %s", actor_id, reason)
        return OperationResult.fail("Task.Forbidden", reason)
    if not (data.get("title") or "").strip():
        return OperationResult.fail("Task.ValidationFailed", "Title is required.")
    error = _validate_fields(actor.tenant_id, data)
    if error:
        return OperationResult.fail("Task.ValidationFailed", error)

    assignees = list(data.get("assignee_ids") or [])
    if data.get("assigned_to_id") is not None:
        assignees.insert(0, data["assigned_to_id"])
    assignees = list(dict.fromkeys(assignees))
    for uid in assignees:
        if not _in_tenant(User, uid, actor.tenant_id):
            return OperationResult.fail("Task.ValidationFailed", f"Assignee {uid} not found.")
    org_unit_id = data.get("assigned_to_org_unit_id")
    if not _in_tenant(OrganizationUnit, org_unit_id, actor.tenant_id):
        return OperationResult.fail("Task.ValidationFailed", "Organization unit not found.")

    targets = assignees or [None]
    tasks = []
    for uid in targets:
        task = QmsTask(
            tenant_id=actor.tenant_id,
            task_number=QmsTask.next_number(actor.tenant_id, "TASK", width=5),
            title=data["title"].strip(),
            description=data.get("description"),
            status="open",
            priority=data.get("priority") or "medium",
            tags=list(data.get("tags") or []),
            due_at=parse_datetime(data.get("due_at")),
            assigned_to_id=uid,
            assigned_to_org_unit_id=org_unit_id,
            created_by_id=actor_id,
            linked_document_id=data.get("linked_document_id"),
            linked_capa_id=data.get("linked_capa_id"),
            linked_audit_id=data.get("linked_audit_id"),
        )
        db.session.add(task)
        db.session.flush()
        write_audit(
            entity_type="task", entity_id=task.id, action="task.create",
            actor_user_id=actor_id, tenant_id=task.tenant_id,
            diff={"assigned_to_id": uid, "assigned_to_org_unit_id": org_unit_id},
        )
        _notify_assignment(task, actor_id)
        tasks.append(task)
    db.session.commit()
    for task in tasks:
        logger.info("Task %s created", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(tasks)


def update_task(actor_id: int, task_id: int, changes: dict, expected_version: int | None = None) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if _is_auditor(actor_id):
        return OperationResult.fail("Task.Forbidden", AUDITOR_READ_ONLY)
    if task.created_by_id != actor_id:
        return OperationResult.fail("Task.Forbidden", "Only the creator can edit this task.")
    if task.status in TERMINAL_STATUSES:
        return OperationResult.fail("Task.InvalidState", "Completed or cancelled tasks cannot be edited.")

    updates = {k: changes[k] for k in EDITABLE_FIELDS if k in changes}
    error = _validate_fields(task.tenant_id, updates)
    if error:
        return OperationResult.fail("Task.ValidationFailed", error)
    for field, value in updates.items():
        if field == "due_at":
            value = parse_datetime(value)
        elif field == "title":
            value = value.strip()
        setattr(task, field, value)
    if "due_at" in updates and task.status == "overdue" and not task.is_overdue():
        restored = task.status_before_overdue or "open"
        task.status, task.status_before_overdue = restored, None
        write_audit(
            entity_type="task", entity_id=task.id, action="task.reschedule",
            actor_user_id=actor_id, tenant_id=task.tenant_id,
            diff={"status": ["overdue", restored], "due_at": task.due_at.isoformat() if task.due_at else None},
        )
    if updates:
        commit_or_stale(task)
        logger.info("Task %s updated", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def delete_task(actor_id: int, task_id: int, expected_version: int | None = None) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if _is_auditor(actor_id):
        return OperationResult.fail("Task.Forbidden", AUDITOR_READ_ONLY)
    if task.created_by_id != actor_id:
        return OperationResult.fail("Task.Forbidden", "Only the creator can delete this task.")
    if task.status in TERMINAL_STATUSES:
        return OperationResult.fail("Task.InvalidState", "Completed or cancelled tasks cannot be deleted.")

    number, tenant_id = task.task_number, task.tenant_id
    write_audit(
        entity_type="task", entity_id=task.id, action="task.delete",
        actor_user_id=actor_id, tenant_id=tenant_id, diff={"task_number": number, "status": task.status},
    )
    db.session.delete(task)
    db.session.commit()
    logger.info("Task %s deleted", number, extra={"tenant_id": tenant_id, "user_id": actor_id})
    return OperationResult.ok(message=f"Task {number} deleted.")


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def assign_task(
    actor_id: int,
    task_id: int,
    assignee_id: int | None = None,
    org_unit_id: int | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """(Re)assign; an open or rejected task moves to in_progress."""
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if _is_auditor(actor_id):
        return OperationResult.fail("Task.Forbidden", AUDITOR_READ_ONLY)
    if task.created_by_id != actor_id and not authz.has_permission(actor_id, "Tasks.Assign"):
        return OperationResult.fail("Task.Forbidden", "You do not have permission to assign this task.")
    if task.status in TERMINAL_STATUSES or task.status == "awaiting_approval":
        return OperationResult.fail("Task.InvalidState", f"Task is {task.status} and cannot be reassigned.")
    if assignee_id is None and org_unit_id is None:
        return OperationResult.fail("Task.ValidationFailed", "An assignee or organization unit is required.")
    if not _in_tenant(User, assignee_id, task.tenant_id):
        return OperationResult.fail("Task.ValidationFailed", "Assignee not found.")
    if not _in_tenant(OrganizationUnit, org_unit_id, task.tenant_id):
        return OperationResult.fail("Task.ValidationFailed", "Organization unit not found.")

    previous = task.status
    task.assigned_to_id = assignee_id
    task.assigned_to_org_unit_id = org_unit_id
    if task.status in ("open", "rejected"):
        task.status = "in_progress"
    write_audit(
        entity_type="task", entity_id=task.id, action="task.assign",
        actor_user_id=actor_id, tenant_id=task.tenant_id,
        diff={"assigned_to_id": assignee_id, "assigned_to_org_unit_id": org_unit_id,
              "status": [previous, task.status]},
    )
    _notify_assignment(task, actor_id)
    commit_or_stale(task)
    logger.info("Task %s assigned to %s", task.task_number, assignee_id or org_unit_id,
                extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def _is_assignee(user, task):
    """Named assignee, or any member of the target unit for an unclaimed unit task."""
    if task.assigned_to_id is not None:
        return task.assigned_to_id == user.id
    return (
        task.assigned_to_org_unit_id is not None
        and task.assigned_to_org_unit_id == user.organization_unit_id
    )


def start_task(actor_id: int, task_id: int, expected_version: int | None = None) -> OperationResult:
    """Assignee begins work. A department member starting a unit task claims it."""
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if not _is_assignee(actor, task):
        return OperationResult.fail("Task.Forbidden", "Only the assignee can start this task.")
    if not validate_task_transition(task.status, "in_progress"):
        return OperationResult.fail("Task.InvalidState", f"Cannot start a task that is {task.status}.")

    task.assigned_to_id = actor_id
    task.status = "in_progress"
    commit_or_stale(task)
    logger.info("Task %s started", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def add_task_activity(
    actor_id: int,
    task_id: int,
    note: str,
    progress_percent: int | None = None,
) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    if not _is_assignee(actor, task):
        return OperationResult.fail("Task.Forbidden", "Only the assignee can add progress updates.")
    if task.status in TERMINAL_STATUSES:
        return OperationResult.fail("Task.InvalidState", "Cannot add updates to completed or cancelled tasks.")
    note = (note or "").strip()
    if not note:
        return OperationResult.fail("Task.ValidationFailed", "A progress note is required.")
    if progress_percent is not None:
        try:
            progress_percent = int(progress_percent)
        except (TypeError, ValueError):
            return OperationResult.fail("Task.ValidationFailed", "Progress must be a whole number.")
        if not 0 <= progress_percent <= 100:
            return OperationResult.fail("Task.ValidationFailed", "Progress must be between 0 and 100.")

    activity = TaskActivity(
        task_id=task.id, user_id=actor_id, note=note, progress_percent=progress_percent,
    )
    db.session.add(activity)
    db.session.commit()
    logger.info("Activity added to task %s", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(activity)


def complete_task(
    actor_id: int,
    task_id: int,
    notes: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """Assignee marks the work done; it then waits for a manager's sign-off."""
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if not _is_assignee(actor, task):
        return OperationResult.fail("Task.Forbidden", "Only the assignee can complete this task.")
    if not validate_task_transition(task.status, "awaiting_approval"):
        if task.status in ("open", "rejected"):
            return OperationResult.fail("Task.InvalidState", "Start the task before completing it.")
        return OperationResult.fail("Task.InvalidState", f"Cannot complete a task that is {task.status}.")

    previous = task.status
    task.assigned_to_id = actor_id
    task.status = "awaiting_approval"
    task.completion_notes = notes
    write_audit(
        entity_type="task", entity_id=task.id, action="task.complete",
        actor_user_id=actor_id, tenant_id=task.tenant_id,
        diff={"status": [previous, "awaiting_approval"]},
    )
    if task.created_by_id != actor_id:
        NotificationService.notify(
            task.created_by_id, f"Task awaiting approval: {task.title}",
            f"{task.task_number} was marked complete and needs your review.",
            entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
        )
    commit_or_stale(task)
    logger.info("Task %s completed, awaiting approval", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def _review_denial(actor_id, task):
    if _is_auditor(actor_id):
        return OperationResult.fail("Task.Forbidden", AUDITOR_READ_ONLY)
    if authz.get_user_tier(actor_id) not in MANAGER_AND_ABOVE:
        return OperationResult.fail("Task.Forbidden", "Only managers can review task completion.")
    if task.assigned_to_id == actor_id:
        return OperationResult.fail("Task.Forbidden", "You cannot review your own task completion.")
    return None


def approve_task_completion(
    actor_id: int,
    task_id: int,
    remarks: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if task.status != "awaiting_approval":
        return OperationResult.fail("Task.InvalidState", "Only tasks awaiting approval can be approved.")
    denied = _review_denial(actor_id, task)
    if denied is not None:
        return denied

    now = utcnow()
    task.status = "completed"
    task.completed_at = now
    task.approved_by_id = actor_id
    task.approved_at = now
    task.reviewer_remarks = remarks
    write_audit(
        entity_type="task", entity_id=task.id, action="task.approve",
        actor_user_id=actor_id, tenant_id=task.tenant_id,
        diff={"status": ["awaiting_approval", "completed"]},
    )
    NotificationService.notify(
        task.assigned_to_id, f"Task approved: {task.title}",
        f"{task.task_number} has been approved.",
        entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
    )
    commit_or_stale(task)
    logger.info("Task %s approved", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def reject_task_completion(
    actor_id: int,
    task_id: int,
    remarks: str,
    expected_version: int | None = None,
) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if task.status != "awaiting_approval":
        return OperationResult.fail("Task.InvalidState", "Only tasks awaiting approval can be rejected.")
    denied = _review_denial(actor_id, task)
    if denied is not None:
        return denied
    remarks = (remarks or "").strip()
    if not remarks:
        return OperationResult.fail("Task.ValidationFailed", "Reviewer remarks are required.")

    task.status = "rejected"
    task.reviewer_remarks = remarks
    write_audit(
        entity_type="task", entity_id=task.id, action="task.reject",
        actor_user_id=actor_id, tenant_id=task.tenant_id,
        diff={"status": ["awaiting_approval", "rejected"], "remarks": remarks},
    )
    NotificationService.notify(
        task.assigned_to_id, f"Task returned: {task.title}", remarks,
        entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
    )
    commit_or_stale(task)
    logger.info("Task %s completion rejected", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


def cancel_task(actor_id: int, task_id: int, expected_version: int | None = None) -> OperationResult:
    actor, task = _load(actor_id, task_id)
    if task is None:
        return _not_found()
    task.check_version(expected_version)
    if _is_auditor(actor_id):
        return OperationResult.fail("Task.Forbidden", AUDITOR_READ_ONLY)
    if task.created_by_id != actor_id:
        return OperationResult.fail("Task.Forbidden", "Only the creator can cancel this task.")
    if not validate_task_transition(task.status, "cancelled"):
        return OperationResult.fail("Task.InvalidState", f"Cannot cancel a task that is {task.status}.")

    previous = task.status
    task.status = "cancelled"
    write_audit(
        entity_type="task", entity_id=task.id, action="task.cancel",
        actor_user_id=actor_id, tenant_id=task.tenant_id, diff={"status": [previous, "cancelled"]},
    )
    commit_or_stale(task)
    logger.info("Task %s cancelled", task.task_number, extra=_log_ctx(task, actor_id))
    return OperationResult.ok(task)


# ═════════════════════════════════════════════════════════════════════════════
# Overdue sweep
# ═════════════════════════════════════════════════════════════════════════════


def mark_overdue_tasks(now=None) -> int:
    """Persist ``overdue`` on every past-due open task. Returns how many changed."""
    now = now or utcnow()
    candidates = QmsTask.query.filter(
        QmsTask.due_at.isnot(None),
        QmsTask.status.notin_(list(NOT_OVERDUE_STATUSES | {"overdue"})),
    ).all()
    marked = 0
    for task in candidates:
        if not task.is_overdue(now):
            continue
        previous = task.status
        task.status_before_overdue = previous
        task.status = "overdue"
        write_audit(
            entity_type="task", entity_id=task.id, action="task.overdue",
            tenant_id=task.tenant_id, diff={"status": [previous, "overdue"]},
        )
        NotificationService.notify(
            task.assigned_to_id, f"Task overdue: {task.title}",
            f"{task.task_number} was due {task.due_at:%Y-%m-%d}.",
            entity_type="task", entity_id=task.id, category="task", tenant_id=task.tenant_id,
        )
        marked += 1
    db.session.commit()
    if marked:
        logger.info("Marked %d task(s) overdue", marked)
    return marked


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_tasks(user_id: int, status: str | None = None) -> list[QmsTask]:
    """Visible tasks; a ``status`` filter matches the effective (derived) status."""
    tasks = (
        visibility_service.visible_tasks_query(user_id)
        .order_by(QmsTask.created_at.desc(), QmsTask.id.desc())
        .all()
    )
    if status:
        now = utcnow()
        tasks = [t for t in tasks if t.effective_status(now) == status]
    return tasks


def get_task(user_id: int, task_id: int) -> OperationResult:
    actor, task = _load(user_id, task_id)
    if task is None or not visibility_service.can_view_task(user_id, task):
        return _not_found()
    return OperationResult.ok(task)


def get_activities(user_id: int, task_id: int) -> OperationResult:
    found = get_task(user_id, task_id)
    if not found:
        return found
    return OperationResult.ok(found.value.activities.all())

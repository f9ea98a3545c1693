"""
Kasah QMS
Workflow Routing Service — who approves a document next.

Routes (chosen once, at submission, and stored on ``Document.approval_route``):

    explicit    submitter named the approver              one step
    tender      tender requisition heuristics match       Finance → TMD/Deputy
    type_chain  document type has required approvers      in approval_order
    manager     fallback                                  submitter's manager,
                                                          else TMD/Deputy; one step

``Document.approval_step`` is the explicit 1-based chain position. Each step
creates an approval task for the new approver and notifies them. On final
approval the creator is notified, and tender documents spawn an
implementation task back to the creator.

The routing functions only stage changes (add/flush); the document service
owns the commit.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from qms.core.result import OperationResult
from qms.models import db
from qms.models.auth import Role, User, UserRole
from qms.models.document import Document, DocumentApproval, DocumentTypeApprover
from qms.models.task import TERMINAL_STATUSES, QmsTask
from qms.services.notification import NotificationService
from qms.services.role_tiers import RoleTier
from qms.utils.helpers import config_value, utcnow

logger = logging.getLogger(__name__)

# ── Defaults (overridable via app config) ───────────────────────────────────

APPROVAL_TASK_DUE_DAYS = 5
URGENT_APPROVAL_TASK_DUE_DAYS = 3
TENDER_IMPLEMENTATION_DUE_DAYS = 14

APPROVAL_TASK_TAGS = ["approval", "workflow"]
TENDER_KEYWORD = "tender"
TENDER_TITLE_PHRASE = "tender requisition"

NO_APPROVER_MESSAGE = (
    "No approver could be resolved for this document. Assign a manager to the "
    "submitter or configure approvers for the document type."
)


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def is_tender_document(document: Document) -> bool:
    """Category or type name contains "tender", or the title names a tender requisition."""
    category = (document.category.name if document.category else "") or ""
    doc_type = (document.document_type.name if document.document_type else "") or ""
    title = (document.title or "").lower()
    return (
        TENDER_KEYWORD in category.lower()
        or TENDER_KEYWORD in doc_type.lower()
        or TENDER_TITLE_PHRASE in title
    )


def _users_with_roles(tenant_id, *criteria):
    return (
        User.query.join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(User.tenant_id == tenant_id, User.is_active.is_(True), *criteria)
        .order_by(User.id)
    )


def find_finance_user(tenant_id: int) -> User | None:
    return _users_with_roles(tenant_id, Role.is_finance.is_(True)).first()


def find_executive_approver(tenant_id: int, exclude=()) -> User | None:
    """First active TMD-tier user, else first Deputy-tier user."""
    for tier in (RoleTier.EXECUTIVE, RoleTier.DEPUTY):
        q = _users_with_roles(tenant_id, Role.tier == tier.value)
        if exclude:
            q = q.filter(User.id.notin_(list(exclude)))
        user = q.first()
        if user is not None:
            return user
    return None


def is_finance_user(user_id: int) -> bool:
    return (
        db.session.query(Role.id)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id, Role.is_finance.is_(True))
        .first()
        is not None
    )


def _type_chain(document: Document) -> list[int]:
    """Active required approvers of the document's type, in approval_order."""
    if document.document_type_id is None:
        return []
    rows = (
        DocumentTypeApprover.query.join(User, User.id == DocumentTypeApprover.approver_id)
        .filter(
            DocumentTypeApprover.document_type_id == document.document_type_id,
            DocumentTypeApprover.is_required.is_(True),
            User.is_active.is_(True),
        )
        .order_by(DocumentTypeApprover.approval_order)
        .all()
    )
    return [r.approver_id for r in rows]


def _manager_or_executive(document: Document, submitter_id: int) -> int | None:
    submitter = db.session.get(User, submitter_id)
    if submitter is not None and submitter.manager_id is not None:
        manager = db.session.get(User, submitter.manager_id)
        if manager is not None and manager.is_active:
            return manager.id
    fallback = find_executive_approver(document.tenant_id, exclude=(submitter_id,))
    return fallback.id if fallback else None


# ═════════════════════════════════════════════════════════════════════════════
# Approval tasks and notifications
# ═════════════════════════════════════════════════════════════════════════════


def _create_approval_task(document: Document, approver_id: int, step: int, urgent: bool) -> QmsTask:
    days = (
        config_value("URGENT_APPROVAL_TASK_DUE_DAYS", URGENT_APPROVAL_TASK_DUE_DAYS)
        if urgent
        else config_value("APPROVAL_TASK_DUE_DAYS", APPROVAL_TASK_DUE_DAYS)
    )
    tags = list(APPROVAL_TASK_TAGS)
    if document.approval_route == "tender":
        tags.append(TENDER_KEYWORD)
    task = QmsTask(
        tenant_id=document.tenant_id,
        task_number=QmsTask.next_number(document.tenant_id, "TASK", width=5),
        title=f"Approve document: {document.title}",
        description=f"Review and approve {document.document_number} (step {step}).",
        status="open",
        priority="high" if urgent else "medium",
        tags=tags,
        due_at=utcnow() + timedelta(days=int(days)),
        assigned_to_id=approver_id,
        created_by_id=document.created_by_id,
        linked_document_id=document.id,
    )
    db.session.add(task)
    db.session.flush()
    logger.info(
        "Created approval task %s for document %s, assigned to %s", task.id, document.id, approver_id,
        extra={"tenant_id": document.tenant_id, "document_id": document.id, "task_id": task.id},
    )
    return task


def _assign_step(document: Document, approver_id: int, step: int) -> None:
    document.current_approver_id = approver_id
    document.approval_step = step
    urgent = step > 1 or document.approval_route == "tender"
    _create_approval_task(document, approver_id, step, urgent)
    NotificationService.notify(
        approver_id,
        f"Approval requested: {document.title}",
        f"{document.document_number} is waiting for your approval.",
        entity_type="document", entity_id=document.id,
        category="approval", tenant_id=document.tenant_id,
    )


def complete_pending_approval_tasks(document: Document, actor_id: int) -> int:
    """Close the actor's open approval tasks for *document*. Returns the count."""
    now = utcnow()
    closed = 0
    tasks = QmsTask.query.filter(
        QmsTask.linked_document_id == document.id,
        QmsTask.assigned_to_id == actor_id,
        QmsTask.status.notin_(list(TERMINAL_STATUSES)),
    ).all()
    for task in tasks:
        if "approval" not in (task.tags or []):
            continue
        task.status = "completed"
        task.completed_at = now
        task.completion_notes = f"Closed by decision on {document.document_number}"
        closed += 1
    return closed


# ═════════════════════════════════════════════════════════════════════════════
# Routing
# ═════════════════════════════════════════════════════════════════════════════


def route_on_submit(document: Document, submitter_id: int, approver_id: int | None = None) -> OperationResult:
    """Pick the route and first approver; stage step 1.

    Nothing is modified when no approver can be resolved.
    """
    if approver_id is not None:
        approver = db.session.get(User, approver_id)
        if approver is None or approver.tenant_id != document.tenant_id or not approver.is_active:
            return OperationResult.fail("Routing.InvalidApprover", "Selected approver is not available.")
        if approver_id == submitter_id:
            return OperationResult.fail("Routing.InvalidApprover", "You cannot approve your own document.")
        route, first = "explicit", approver_id
    elif is_tender_document(document):
        finance = find_finance_user(document.tenant_id)
        if finance is None:
            logger.warning("No Finance user in tenant %s; tender goes to TMD/Deputy", document.tenant_id)
            finance = find_executive_approver(document.tenant_id, exclude=(submitter_id,))
        route, first = "tender", (finance.id if finance else None)
    else:
        chain = _type_chain(document)
        if chain:
            route, first = "type_chain", chain[0]
        else:
            route, first = "manager", _manager_or_executive(document, submitter_id)

    if first is None:
        logger.warning(
            "No approver resolved for document %s (route=%s)", document.id, route,
            extra={"tenant_id": document.tenant_id, "document_id": document.id},
        )
        return OperationResult.fail("Routing.NoApprover", NO_APPROVER_MESSAGE)

    document.approval_route = route
    _assign_step(document, first, 1)
    logger.info(
        "Document %s routed to %s via %s", document.id, first, route,
        extra={"tenant_id": document.tenant_id, "document_id": document.id},
    )
    return OperationResult.ok(first)


def next_approver(document: Document, approver_id: int) -> OperationResult:
    """Approver for the step after the current one; ``value=None`` means final.

    Pure lookup: stages nothing.
    """
    route, step = document.approval_route, document.approval_step or 1

    if route == "tender":
        if step == 1 and is_finance_user(approver_id):
            executive = find_executive_approver(document.tenant_id, exclude=(approver_id,))
            if executive is None:
                return OperationResult.fail("Routing.NoApprover", "No TMD or Deputy is available.")
            return OperationResult.ok(executive.id)
        return OperationResult.ok(None)

    if route == "type_chain":
        chain = _type_chain(document)
        if step < len(chain):
            return OperationResult.ok(chain[step])
        return OperationResult.ok(None)

    return OperationResult.ok(None)


def advance_to(document: Document, approver_id: int) -> None:
    """Stage the next chain step for *approver_id*."""
    _assign_step(document, approver_id, (document.approval_step or 1) + 1)


def on_final_approval(document: Document, approver_id: int) -> None:
    NotificationService.notify(
        document.created_by_id,
        f"Document approved: {document.title}",
        f"{document.document_number} has been approved.",
        entity_type="document", entity_id=document.id,
        category="approval", tenant_id=document.tenant_id,
    )
    if document.approval_route != "tender":
        return
    days = config_value("TENDER_IMPLEMENTATION_DUE_DAYS", TENDER_IMPLEMENTATION_DUE_DAYS)
    task = QmsTask(
        tenant_id=document.tenant_id,
        task_number=QmsTask.next_number(document.tenant_id, "TASK", width=5),
        title=f"Implement tender: {document.title}",
        description=f"Tender requisition {document.document_number} is approved; proceed with implementation.",
        status="open",
        priority="high",
        tags=[TENDER_KEYWORD, "implementation"],
        due_at=utcnow() + timedelta(days=int(days)),
        assigned_to_id=document.created_by_id,
        created_by_id=approver_id,
        linked_document_id=document.id,
    )
    db.session.add(task)
    db.session.flush()
    logger.info(
        "Created implementation task %s for approved tender %s", task.id, document.id,
        extra={"tenant_id": document.tenant_id, "document_id": document.id, "task_id": task.id},
    )


def on_rejection(document: Document, reason: str) -> None:
    NotificationService.notify(
        document.created_by_id,
        f"Document rejected: {document.title}",
        f"{document.document_number} was rejected: {reason}",
        entity_type="document", entity_id=document.id,
        category="approval", tenant_id=document.tenant_id,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_pending_approvals(user_id: int) -> list[Document]:
    """Documents waiting on *user_id*, oldest submission first."""
    return (
        Document.query.filter(
            Document.current_approver_id == user_id,
            Document.status.in_(["submitted", "in_review"]),
        )
        .order_by(Document.submitted_at)
        .all()
    )


def get_approval_history(document_id: int) -> list[DocumentApproval]:
    return (
        DocumentApproval.query.filter_by(document_id=document_id)
        .order_by(DocumentApproval.approved_at, DocumentApproval.id)
        .all()
    )

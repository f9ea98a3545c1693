"""
Kasah QMS
Document Service — controlled-document lifecycle.

State machine (see ``qms.models.document.DOCUMENT_TRANSITIONS``):

    draft ──submit──► submitted ──approve (more steps)──► in_review ─┐
      ▲                    │                                  ▲      │
      │                    │                                  └──────┘
      └──── reject ◄───────┴──────── approve (final) ──► approved ──archive──► archived

Guards:
    - edit: draft/rejected only; creator, or TMD / Deputy / Admin override
    - delete: creator, draft only
    - submit: creator, draft/rejected; an approver must be resolvable
    - approve / reject: current approver only, while submitted/in_review
    - archive: approved only, ``Documents.Archive``

Rule violations come back as ``OperationResult`` failures. A stale
``expected_version`` raises ``StaleObjectError``.
"""

from __future__ import annotations

import logging

from qms.core.result import OperationResult
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import OrganizationUnit, User
from qms.models.document import (
    EDITABLE_STATUSES,
    PENDING_APPROVAL_STATUSES,
    Document,
    DocumentApproval,
    DocumentCategory,
    DocumentType,
    DocumentVersion,
    validate_document_transition,
)
from qms.services import authorization_service as authz
from qms.services import visibility_service
from qms.services import workflow_routing_service as routing
from qms.services.role_tiers import RoleTier
from qms.utils.helpers import commit_or_stale, utcnow

logger = logging.getLogger(__name__)

EDIT_OVERRIDE_TIERS = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE, RoleTier.DEPUTY})
TEMPLATE_AUTHOR_TIERS = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE})

EDITABLE_FIELDS = (
    "title", "description", "content", "document_type_id", "category_id",
    "target_department_id", "target_user_id", "authorized_department_ids",
)


# ── Internal helpers ────────────────────────────────────────────────────────


def _not_found():
    return OperationResult.fail("Document.NotFound", "Document not found.")


def _load(actor_id, document_id):
    """(actor, document) scoped to the actor's tenant; document None when out of scope."""
    actor = db.session.get(User, actor_id)
    doc = db.session.get(Document, document_id) if document_id is not None else None
    if actor is None or doc is None or doc.tenant_id != actor.tenant_id:
        return actor, None
    return actor, doc


def _check_references(tenant_id, data):
    """Return an error message for a foreign key outside the tenant, else None."""
    refs = (
        ("document_type_id", DocumentType, "Document type"),
        ("category_id", DocumentCategory, "Category"),
        ("target_department_id", OrganizationUnit, "Target department"),
        ("target_user_id", User, "Target user"),
    )
    for field, model, label in refs:
        value = data.get(field)
        if value is None:
            continue
        obj = db.session.get(model, value)
        if obj is None or obj.tenant_id != tenant_id:
            return f"{label} not found."
    return None


def _snapshot(doc, actor_id, note):
    db.session.add(DocumentVersion(
        document_id=doc.id,
        version_number=doc.current_version,
        title=doc.title,
        content=doc.content,
        change_note=note,
        created_by_id=actor_id,
    ))


def _log_ctx(doc, actor_id):
    return {"tenant_id": doc.tenant_id, "user_id": actor_id, "document_id": doc.id}


# ═════════════════════════════════════════════════════════════════════════════
# Predicates
# ═════════════════════════════════════════════════════════════════════════════


def can_edit_document(user_id: int, document: Document) -> bool:
    if document is None or document.status not in EDITABLE_STATUSES:
        return False
    tier = authz.get_user_tier(user_id)
    if tier == RoleTier.AUDITOR:
        return False
    return document.created_by_id == user_id or tier in EDIT_OVERRIDE_TIERS


def can_delete_document(user_id: int, document: Document) -> bool:
    return document is not None and document.status == "draft" and document.created_by_id == user_id


def can_archive_document(user_id: int, document: Document) -> bool:
    return (
        document is not None
        and document.status == "approved"
        and authz.has_permission(user_id, "Documents.Archive")
    )


def can_approve_document(user_id: int, document: Document) -> bool:
    return (
        document is not None
        and document.status in PENDING_APPROVAL_STATUSES
        and document.current_approver_id == user_id
    )


# ═════════════════════════════════════════════════════════════════════════════
# Create / edit / delete
# ═════════════════════════════════════════════════════════════════════════════


def create_document(actor_id: int, data: dict) -> OperationResult:
    """Create a draft document (or a template, for TMD / Admin)."""
    actor = db.session.get(User, actor_id)
    if actor is None:
        return OperationResult.fail("Document.Forbidden", "Unknown user.")
    tier = authz.get_user_tier(actor_id)
    if tier == RoleTier.AUDITOR:
        logger.warning("Auditor %s attempted to create document", actor_id)
        return OperationResult.fail(
            "Document.Forbidden", "Auditors cannot create documents. This is a read-only role.",
        )
    if not authz.has_permission(actor_id, "Documents.Create"):
        return OperationResult.fail(
            "Document.Forbidden", "You do not have permission to create documents.",
        )

    title = (data.get("title") or "").strip()
    if not title:
        return OperationResult.fail("Document.ValidationFailed", "Title is required.")
    is_template = bool(data.get("is_template"))
    if is_template and tier not in TEMPLATE_AUTHOR_TIERS:
        return OperationResult.fail(
            "Document.Forbidden", "Only TMD or System Admin can create document templates.",
        )
    error = _check_references(actor.tenant_id, data)
    if error:
        return OperationResult.fail("Document.ValidationFailed", error)

    doc = Document(
        tenant_id=actor.tenant_id,
        document_number=Document.next_number(actor.tenant_id, "DOC"),
        title=title,
        description=data.get("description"),
        content=data.get("content"),
        status="draft",
        current_version=1,
        document_type_id=data.get("document_type_id"),
        category_id=data.get("category_id"),
        created_by_id=actor_id,
        target_department_id=data.get("target_department_id"),
        target_user_id=data.get("target_user_id"),
        is_template=is_template,
        authorized_department_ids=list(data.get("authorized_department_ids") or []),
        source_template_id=data.get("source_template_id"),
    )
    db.session.add(doc)
    db.session.flush()
    _snapshot(doc, actor_id, "Initial version")
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.create",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"title": title, "is_template": is_template},
    )
    db.session.commit()
    logger.info("Document %s created", doc.document_number, extra=_log_ctx(doc, actor_id))
    return OperationResult.ok(doc)


def create_from_template(actor_id: int, template_id: int, overrides: dict | None = None) -> OperationResult:
    """Clone a template into a fresh draft, honouring its department allow-list."""
    actor, template = _load(actor_id, template_id)
    if template is None or not template.is_template:
        return OperationResult.fail("Document.NotFound", "Template not found.")
    if authz.get_user_tier(actor_id) == RoleTier.AUDITOR:
        return OperationResult.fail(
            "Document.Forbidden",
            "Auditors cannot create documents from templates. This is a read-only role.",
        )
    if not visibility_service.can_view_template(actor_id, template):
        return OperationResult.fail(
            "Document.Forbidden", "Your department is not authorized to use this template.",
        )

    overrides = overrides or {}
    data = {
        "title": overrides.get("title") or template.title,
        "description": overrides.get("description", template.description),
        "content": overrides.get("content", template.content),
        "document_type_id": template.document_type_id,
        "category_id": template.category_id,
        "target_department_id": overrides.get("target_department_id"),
        "target_user_id": overrides.get("target_user_id"),
        "source_template_id": template.id,
    }
    result = create_document(actor_id, data)
    if not result:
        return result
    doc = result.value
    logger.info(
        "Document %s created from template %s", doc.document_number, template.id,
        extra=_log_ctx(doc, actor_id),
    )
    return OperationResult.ok(doc)


def update_document(
    actor_id: int,
    document_id: int,
    changes: dict,
    expected_version: int | None = None,
    change_note: str | None = None,
) -> OperationResult:
    """Edit a draft/rejected document; bumps ``current_version`` and snapshots it."""
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    if doc.status not in EDITABLE_STATUSES:
        if doc.status == "approved":
            return OperationResult.fail(
                "Document.InvalidState",
                "Approved documents are read-only. Create a new version to make changes.",
            )
        return OperationResult.fail("Document.InvalidState", "Only draft documents can be edited.")
    if authz.get_user_tier(actor_id) == RoleTier.AUDITOR:
        return OperationResult.fail("Document.Forbidden", "Auditors cannot edit documents.")
    if not can_edit_document(actor_id, doc):
        return OperationResult.fail(
            "Document.Forbidden", "Only the creator can edit this document.",
        )

    updates = {k: changes[k] for k in EDITABLE_FIELDS if k in changes}
    if "title" in updates and not (updates["title"] or "").strip():
        return OperationResult.fail("Document.ValidationFailed", "Title is required.")
    error = _check_references(doc.tenant_id, updates)
    if error:
        return OperationResult.fail("Document.ValidationFailed", error)
    if not updates:
        return OperationResult.ok(doc)

    for field, value in updates.items():
        setattr(doc, field, value.strip() if field == "title" else value)
    doc.current_version = (doc.current_version or 1) + 1
    _snapshot(doc, actor_id, change_note or "Edited")
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.update",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"fields": sorted(updates), "current_version": doc.current_version},
    )
    commit_or_stale(doc)
    logger.info("Document %s edited", doc.document_number, extra=_log_ctx(doc, actor_id))
    return OperationResult.ok(doc)


def delete_document(actor_id: int, document_id: int, expected_version: int | None = None) -> OperationResult:
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    if doc.status != "draft":
        return OperationResult.fail("Document.InvalidState", "Only draft documents can be deleted.")
    if not can_delete_document(actor_id, doc):
        return OperationResult.fail("Document.Forbidden", "Only the creator can delete this document.")

    number, tenant_id = doc.document_number, doc.tenant_id
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.delete",
        actor_user_id=actor_id, tenant_id=tenant_id, diff={"document_number": number},
    )
    db.session.delete(doc)
    db.session.commit()
    logger.info("Document %s deleted", number, extra={"tenant_id": tenant_id, "user_id": actor_id})
    return OperationResult.ok(message=f"Document {number} deleted.")


# ═════════════════════════════════════════════════════════════════════════════
# Workflow transitions
# ═════════════════════════════════════════════════════════════════════════════


def submit_document(
    actor_id: int,
    document_id: int,
    approver_id: int | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """Draft/rejected → submitted, routed to the first approver."""
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    if not validate_document_transition(doc.status, "submitted"):
        return OperationResult.fail(
            "Document.InvalidState", "Only draft or rejected documents can be submitted.",
        )
    if doc.created_by_id != actor_id:
        return OperationResult.fail("Document.Forbidden", "Only the creator can submit this document.")
    if not authz.has_permission(actor_id, "Documents.Submit"):
        return OperationResult.fail("Document.Forbidden", "You do not have permission to submit documents.")

    previous = doc.status
    routed = routing.route_on_submit(doc, actor_id, approver_id=approver_id)
    if not routed:
        db.session.rollback()
        return routed

    doc.status = "submitted"
    doc.submitted_at = utcnow()
    doc.rejection_reason = None
    _snapshot(doc, actor_id, "Submitted for approval")
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.submit",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"status": [previous, "submitted"], "approver_id": routed.value,
              "route": doc.approval_route},
    )
    commit_or_stale(doc)
    logger.info(
        "Document %s submitted, approver %s", doc.document_number, routed.value,
        extra=_log_ctx(doc, actor_id),
    )
    return OperationResult.ok(doc)


def approve_document(
    actor_id: int,
    document_id: int,
    comments: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    """Record the current approver's approval; re-route or finalize."""
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    if doc.status not in PENDING_APPROVAL_STATUSES:
        return OperationResult.fail(
            "Document.InvalidState", f"Document is {doc.status}, cannot approve.",
        )
    if doc.current_approver_id != actor_id:
        logger.warning("User %s is not the current approver of document %s", actor_id, doc.id)
        return OperationResult.fail(
            "Document.Forbidden", "Only the current approver can approve this document.",
        )

    following = routing.next_approver(doc, actor_id)
    if not following:
        return following

    step = doc.approval_step or 1
    db.session.add(DocumentApproval(
        document_id=doc.id, approver_id=actor_id, step=step, is_approved=True, comments=comments,
    ))
    routing.complete_pending_approval_tasks(doc, actor_id)

    if following.value is not None:
        doc.status = "in_review"
        routing.advance_to(doc, following.value)
        write_audit(
            entity_type="document", entity_id=doc.id, action="document.approve_partial",
            actor_user_id=actor_id, tenant_id=doc.tenant_id,
            diff={"step": step, "next_approver_id": following.value},
        )
        commit_or_stale(doc)
        logger.info(
            "Document %s partially approved at step %s, next approver %s",
            doc.document_number, step, following.value, extra=_log_ctx(doc, actor_id),
        )
        return OperationResult.ok(doc, message="Approval recorded; forwarded to the next approver.")

    previous = doc.status
    doc.status = "approved"
    doc.approved_at = utcnow()
    doc.approved_by_id = actor_id
    doc.current_approver_id = None
    doc.approval_step = 0
    routing.on_final_approval(doc, actor_id)
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.approve",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"status": [previous, "approved"], "step": step},
    )
    commit_or_stale(doc)
    logger.info("Document %s approved", doc.document_number, extra=_log_ctx(doc, actor_id))
    return OperationResult.ok(doc, message="Document approved.")


def reject_document(
    actor_id: int,
    document_id: int,
    reason: str,
    expected_version: int | None = None,
) -> OperationResult:
    """Current approver rejects; the document returns to draft with the reason."""
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    reason = (reason or "").strip()
    if not reason:
        return OperationResult.fail("Document.ValidationFailed", "A rejection reason is required.")
    if not validate_document_transition(doc.status, "rejected"):
        return OperationResult.fail(
            "Document.InvalidState", f"Cannot reject document in {doc.status} status.",
        )
    if doc.current_approver_id != actor_id:
        return OperationResult.fail(
            "Document.Forbidden", "Only the current approver can reject this document.",
        )

    previous = doc.status
    db.session.add(DocumentApproval(
        document_id=doc.id, approver_id=actor_id, step=doc.approval_step or 1,
        is_approved=False, comments=reason,
    ))
    routing.complete_pending_approval_tasks(doc, actor_id)
    doc.status = "draft"
    doc.rejection_reason = reason
    doc.current_approver_id = None
    doc.approval_step = 0
    doc.approval_route = None
    routing.on_rejection(doc, reason)
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.reject",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"status": [previous, "rejected", "draft"], "reason": reason},
    )
    commit_or_stale(doc)
    logger.info("Document %s rejected", doc.document_number, extra=_log_ctx(doc, actor_id))
    return OperationResult.ok(doc, message="Document rejected and returned to draft.")


def archive_document(
    actor_id: int,
    document_id: int,
    reason: str | None = None,
    expected_version: int | None = None,
) -> OperationResult:
    actor, doc = _load(actor_id, document_id)
    if doc is None:
        return _not_found()
    doc.check_version(expected_version)
    if not validate_document_transition(doc.status, "archived"):
        return OperationResult.fail(
            "Document.InvalidState",
            f"Only approved documents can be archived. Current status: {doc.status}",
        )
    if not authz.has_permission(actor_id, "Documents.Archive"):
        logger.warning("User %s denied: missing permission 'Documents.Archive'", actor_id)
        return OperationResult.fail("Document.Forbidden", "You do not have permission to archive documents.")

    doc.status = "archived"
    doc.archived_at = utcnow()
    doc.archived_by_id = actor_id
    doc.archive_reason = (reason or "").strip() or None
    write_audit(
        entity_type="document", entity_id=doc.id, action="document.archive",
        actor_user_id=actor_id, tenant_id=doc.tenant_id,
        diff={"status": ["approved", "archived"], "reason": doc.archive_reason},
    )
    commit_or_stale(doc)
    logger.info("Document %s archived", doc.document_number, extra=_log_ctx(doc, actor_id))
    return OperationResult.ok(doc, message="Document archived.")


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_documents(user_id: int, status: str | None = None) -> list[Document]:
    q = visibility_service.visible_documents_query(user_id)
    if status:
        q = q.filter(Document.status == status)
    return q.order_by(Document.created_at.desc(), Document.id.desc()).all()


def list_templates(user_id: int) -> list[Document]:
    """Templates the user's department may instantiate."""
    user = db.session.get(User, user_id)
    if user is None:
        return []
    templates = (
        Document.query_for_tenant(user.tenant_id)
        .filter(Document.is_template.is_(True))
        .order_by(Document.title)
        .all()
    )
    return [t for t in templates if visibility_service.can_view_template(user_id, t)]


def get_document(user_id: int, document_id: int) -> OperationResult:
    """Detail view: not found when invisible, so existence is not leaked."""
    actor, doc = _load(user_id, document_id)
    if doc is None or not visibility_service.can_view_document(user_id, doc):
        return _not_found()
    return OperationResult.ok(doc)


def get_pending_approvals(user_id: int) -> list[Document]:
    return routing.get_pending_approvals(user_id)


def get_approval_history(user_id: int, document_id: int) -> OperationResult:
    found = get_document(user_id, document_id)
    if not found:
        return found
    return OperationResult.ok(routing.get_approval_history(document_id))

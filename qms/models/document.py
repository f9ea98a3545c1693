"""
Kasah QMS
Document domain model.

Models:
    - DocumentType / DocumentCategory: classification lookups
    - DocumentTypeApprover: ordered approver chain per document type
    - Document: controlled document with approval state machine
    - DocumentVersion: append-only content snapshots
    - DocumentApproval: append-only approve/reject decisions
"""

from datetime import datetime, timezone

from qms.models import db
from qms.models.base import TenantModel, VersionedMixin


# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_STATUSES = {"draft", "submitted", "in_review", "approved", "rejected", "archived"}

# Rejected is a transient state: reject() records the decision and sends the
# document straight back to draft for correction.
DOCUMENT_TRANSITIONS = {
    "draft":     ["submitted"],
    "submitted": ["in_review", "approved", "rejected"],
    "in_review": ["in_review", "approved", "rejected"],
    "rejected":  ["draft", "submitted"],
    "approved":  ["archived"],
    "archived":  [],
}

EDITABLE_STATUSES = {"draft", "rejected"}
PENDING_APPROVAL_STATUSES = {"submitted", "in_review"}

APPROVAL_ROUTES = {"tender", "type_chain", "manager", "explicit"}


def validate_document_transition(old_status, new_status):
    """Return True if Document status transition is valid."""
    return new_status in DOCUMENT_TRANSITIONS.get(old_status, [])


# ── Lookups ──────────────────────────────────────────────────────────────────


class DocumentType(TenantModel):
    __tablename__ = "document_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20))
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)

    approvers = db.relationship(
        "DocumentTypeApprover", back_populates="document_type",
        order_by="DocumentTypeApprover.approval_order", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "is_active": self.is_active,
        }


class DocumentCategory(TenantModel):
    __tablename__ = "document_categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "description": self.description,
                "is_active": self.is_active}


class DocumentTypeApprover(TenantModel):
    """One step in a document type's approval chain."""

    __tablename__ = "document_type_approvers"

    id = db.Column(db.Integer, primary_key=True)
    document_type_id = db.Column(
        db.Integer, db.ForeignKey("document_types.id", ondelete="CASCADE"), nullable=False,
    )
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    approval_order = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.UniqueConstraint("document_type_id", "approval_order", name="uq_doc_type_approval_order"),
    )

    document_type = db.relationship("DocumentType", back_populates="approvers")
    approver = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "document_type_id": self.document_type_id,
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "approval_order": self.approval_order,
            "is_required": self.is_required,
        }


# ── Document ─────────────────────────────────────────────────────────────────


class Document(TenantModel, VersionedMixin):
    """
    Controlled document.

    ``approval_step`` is the 1-based position in the route recorded by
    ``approval_route`` when the document was submitted; it is reset on
    reject and on final approval.
    """

    __tablename__ = "documents"
    number_column = "document_number"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    content = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="draft")
    current_version = db.Column(db.Integer, nullable=False, default=1)

    document_type_id = db.Column(db.Integer, db.ForeignKey("document_types.id"), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey("document_categories.id"), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    current_approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    approval_route = db.Column(db.String(20), nullable=True)
    approval_step = db.Column(db.Integer, nullable=False, default=0)

    target_department_id = db.Column(
        db.Integer, db.ForeignKey("organization_units.id", ondelete="SET NULL"), nullable=True,
    )
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    is_template = db.Column(db.Boolean, default=False, nullable=False)
    authorized_department_ids = db.Column(db.JSON, default=list)  # empty = unrestricted
    source_template_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True,
    )

    submitted_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejection_reason = db.Column(db.Text)
    archived_at = db.Column(db.DateTime, nullable=True)
    archived_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    archive_reason = db.Column(db.Text)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "document_number", name="uq_document_tenant_number"),
        db.Index("ix_documents_tenant_status", "tenant_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}

    document_type = db.relationship("DocumentType")
    category = db.relationship("DocumentCategory")
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    current_approver = db.relationship("User", foreign_keys=[current_approver_id])
    versions = db.relationship(
        "DocumentVersion", back_populates="document", lazy="dynamic",
        order_by="DocumentVersion.version_number", cascade="all, delete-orphan",
    )
    approvals = db.relationship(
        "DocumentApproval", back_populates="document", lazy="dynamic",
        order_by="DocumentApproval.approved_at", cascade="all, delete-orphan",
    )

    @property
    def is_pending_approval(self):
        return self.status in PENDING_APPROVAL_STATUSES

    @property
    def is_editable(self):
        return self.status in EDITABLE_STATUSES

    def to_dict(self, include_history=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "document_number": self.document_number,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "status": self.status,
            "current_version": self.current_version,
            "document_type_id": self.document_type_id,
            "document_type": self.document_type.name if self.document_type else None,
            "category_id": self.category_id,
            "category": self.category.name if self.category else None,
            "created_by_id": self.created_by_id,
            "current_approver_id": self.current_approver_id,
            "approval_route": self.approval_route,
            "approval_step": self.approval_step,
            "target_department_id": self.target_department_id,
            "target_user_id": self.target_user_id,
            "is_template": self.is_template,
            "authorized_department_ids": self.authorized_department_ids or [],
            "source_template_id": self.source_template_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "approved_by_id": self.approved_by_id,
            "rejection_reason": self.rejection_reason,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "archive_reason": self.archive_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_history:
            d["approvals"] = [a.to_dict() for a in self.approvals.all()]
            d["versions"] = [v.to_dict() for v in self.versions.all()]
        return d

    def __repr__(self):
        return f"<Document {self.document_number}: {self.status}>"


class DocumentVersion(db.Model):
    """Append-only content snapshot, one per edit or submission."""

    __tablename__ = "document_versions"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300))
    content = db.Column(db.Text)
    change_note = db.Column(db.String(300))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    document = db.relationship("Document", back_populates="versions")

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "version_number": self.version_number,
            "title": self.title,
            "change_note": self.change_note,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DocumentApproval(db.Model):
    """Append-only approval decision. ``step`` mirrors Document.approval_step."""

    __tablename__ = "document_approvals"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    step = db.Column(db.Integer, nullable=False, default=1)
    is_approved = db.Column(db.Boolean, nullable=False)
    comments = db.Column(db.Text)
    approved_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    document = db.relationship("Document", back_populates="approvals")
    approver = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "step": self.step,
            "is_approved": self.is_approved,
            "comments": self.comments,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }

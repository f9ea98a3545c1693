"""
Kasah QMS
Task domain model.

Models:
    - QmsTask: assignable work item, optionally linked to a document, CAPA or audit
    - TaskActivity: progress notes posted by the assignee
"""

from datetime import datetime, timezone

from qms.models import db
from qms.models.base import TenantModel, VersionedMixin


# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {
    "open", "in_progress", "awaiting_approval", "completed",
    "cancelled", "overdue", "rejected",
}
TASK_PRIORITIES = {"low", "medium", "high", "urgent"}

# "overdue" is never the target of a user action; it is derived from due_at
# (see QmsTask.effective_status) and persisted only by the scheduled sweep.
TASK_TRANSITIONS = {
    "open":              ["in_progress", "cancelled"],
    "in_progress":       ["awaiting_approval", "cancelled"],
    "awaiting_approval": ["completed", "rejected"],
    "rejected":          ["in_progress", "cancelled"],
    "overdue":           ["in_progress", "awaiting_approval", "cancelled"],
    "completed":         [],
    "cancelled":         [],
}

TERMINAL_STATUSES = {"completed", "cancelled"}
NOT_OVERDUE_STATUSES = {"completed", "cancelled", "awaiting_approval"}


def validate_task_transition(old_status, new_status):
    """Return True if QmsTask status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QmsTask(TenantModel, VersionedMixin):
    __tablename__ = "qms_tasks"
    number_column = "task_number"

    id = db.Column(db.Integer, primary_key=True)
    task_number = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(30), nullable=False, default="open")
    # status the overdue sweep replaced; restored when the due date moves out
    status_before_overdue = db.Column(db.String(30))
    priority = db.Column(db.String(20), nullable=False, default="medium")
    tags = db.Column(db.JSON, default=list)
    due_at = db.Column(db.DateTime, nullable=True)

    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    assigned_to_org_unit_id = db.Column(
        db.Integer, db.ForeignKey("organization_units.id", ondelete="SET NULL"), nullable=True,
    )
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    linked_document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    linked_capa_id = db.Column(
        db.Integer, db.ForeignKey("capas.id", ondelete="SET NULL"), nullable=True,
    )
    linked_audit_id = db.Column(db.Integer, nullable=True)  # audit module reference only

    completed_at = db.Column(db.DateTime, nullable=True)
    completion_notes = db.Column(db.Text)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    reviewer_remarks = db.Column(db.Text)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "task_number", name="uq_task_tenant_number"),
        db.Index("ix_qms_tasks_tenant_status", "tenant_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}

    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    activities = db.relationship(
        "TaskActivity", back_populates="task", lazy="dynamic",
        order_by="TaskActivity.created_at", cascade="all, delete-orphan",
    )

    def is_overdue(self, now=None):
        now = now or datetime.now(timezone.utc)
        due = _aware(self.due_at)
        return due is not None and due < now and self.status not in NOT_OVERDUE_STATUSES

    def effective_status(self, now=None):
        """Status as seen by readers: "overdue" exactly while past due."""
        if self.is_overdue(now):
            return "overdue"
        if self.status == "overdue":
            return self.status_before_overdue or "open"
        return self.status

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "task_number": self.task_number,
            "title": self.title,
            "description": self.description,
            "status": self.effective_status(),
            "stored_status": self.status,
            "priority": self.priority,
            "tags": self.tags or [],
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "assigned_to_id": self.assigned_to_id,
            "assigned_to_org_unit_id": self.assigned_to_org_unit_id,
            "created_by_id": self.created_by_id,
            "linked_document_id": self.linked_document_id,
            "linked_capa_id": self.linked_capa_id,
            "linked_audit_id": self.linked_audit_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completion_notes": self.completion_notes,
            "approved_by_id": self.approved_by_id,
            "reviewer_remarks": self.reviewer_remarks,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<QmsTask {self.task_number}: {self.status}>"


class TaskActivity(db.Model):
    __tablename__ = "task_activities"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("qms_tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    note = db.Column(db.Text, nullable=False)
    progress_percent = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    task = db.relationship("QmsTask", back_populates="activities")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "note": self.note,
            "progress_percent": self.progress_percent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

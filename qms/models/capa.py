"""
Kasah QMS
CAPA (Corrective and Preventive Action) domain model.

Models:
    - Capa: forward-only lifecycle from draft to closed
    - CapaAction: individual corrective/preventive actions under a CAPA
"""

from datetime import datetime, timezone

from qms.models import db
from qms.models.base import TenantModel, VersionedMixin


# ── Constants ────────────────────────────────────────────────────────────────

CAPA_STATUS_ORDER = [
    "draft",
    "under_investigation",
    "actions_defined",
    "actions_implemented",
    "effectiveness_verified",
    "closed",
]
CAPA_STATUSES = set(CAPA_STATUS_ORDER)
CAPA_TYPES = {"corrective", "preventive", "both"}
CAPA_PRIORITIES = {"low", "medium", "high", "critical"}
CAPA_ACTION_STATUSES = {"pending", "in_progress", "completed"}

NON_DELETABLE_STATUSES = {"effectiveness_verified", "closed"}


def get_next_status(status):
    """Return the single forward successor of *status*, or None at closed."""
    try:
        idx = CAPA_STATUS_ORDER.index(status)
    except ValueError:
        return None
    if idx + 1 >= len(CAPA_STATUS_ORDER):
        return None
    return CAPA_STATUS_ORDER[idx + 1]


class Capa(TenantModel, VersionedMixin):
    __tablename__ = "capas"
    number_column = "capa_number"

    id = db.Column(db.Integer, primary_key=True)
    capa_number = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    capa_type = db.Column(db.String(20), nullable=False, default="corrective")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(30), nullable=False, default="draft")

    source_audit_id = db.Column(db.Integer, nullable=True)  # audit module reference only
    source_document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True,
    )
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    target_completion_date = db.Column(db.Date, nullable=True)

    root_cause_analysis = db.Column(db.Text)
    immediate_containment = db.Column(db.Text)
    corrective_action_plan = db.Column(db.Text)
    preventive_action_plan = db.Column(db.Text)

    verified_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    verification_notes = db.Column(db.Text)
    is_effective = db.Column(db.Boolean, nullable=True)

    closed_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    closure_notes = db.Column(db.Text)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "capa_number", name="uq_capa_tenant_number"),
    )
    __mapper_args__ = {"version_id_col": version}

    created_by = db.relationship("User", foreign_keys=[created_by_id])
    owner = db.relationship("User", foreign_keys=[owner_id])
    actions = db.relationship(
        "CapaAction", back_populates="capa", lazy="dynamic", cascade="all, delete-orphan",
    )

    # ── Lifecycle ────────────────────────────────────────────────────────

    def get_next_status(self):
        return get_next_status(self.status)

    def advance_status(self):
        """Move one step forward. Returns the new status, or None if closed."""
        nxt = get_next_status(self.status)
        if nxt is None:
            return None
        self.status = nxt
        return nxt

    @property
    def can_be_deleted(self):
        return self.status not in NON_DELETABLE_STATUSES

    @property
    def is_closed(self):
        return self.status == "closed"

    def to_dict(self, include_actions=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "capa_number": self.capa_number,
            "title": self.title,
            "description": self.description,
            "capa_type": self.capa_type,
            "priority": self.priority,
            "status": self.status,
            "next_status": self.get_next_status(),
            "source_audit_id": self.source_audit_id,
            "source_document_id": self.source_document_id,
            "owner_id": self.owner_id,
            "created_by_id": self.created_by_id,
            "target_completion_date": (
                self.target_completion_date.isoformat() if self.target_completion_date else None
            ),
            "root_cause_analysis": self.root_cause_analysis,
            "immediate_containment": self.immediate_containment,
            "corrective_action_plan": self.corrective_action_plan,
            "preventive_action_plan": self.preventive_action_plan,
            "verified_by_id": self.verified_by_id,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verification_notes": self.verification_notes,
            "is_effective": self.is_effective,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "closure_notes": self.closure_notes,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_actions:
            d["actions"] = [a.to_dict() for a in self.actions.all()]
        return d

    def __repr__(self):
        return f"<Capa {self.capa_number}: {self.status}>"


class CapaAction(db.Model):
    __tablename__ = "capa_actions"

    id = db.Column(db.Integer, primary_key=True)
    capa_id = db.Column(
        db.Integer, db.ForeignKey("capas.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    description = db.Column(db.Text, nullable=False)
    action_type = db.Column(db.String(20), nullable=False, default="corrective")
    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime, nullable=True)
    completion_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    capa = db.relationship("Capa", back_populates="actions")

    def to_dict(self):
        return {
            "id": self.id,
            "capa_id": self.capa_id,
            "description": self.description,
            "action_type": self.action_type,
            "assignee_id": self.assignee_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completion_notes": self.completion_notes,
        }

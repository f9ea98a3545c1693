"""
Append-only audit trail.

Services call ``write_audit`` inside their own transaction; the row is
flushed, never committed here, so an audit entry only survives if the
change it describes does.
"""

from datetime import datetime, timezone

from qms.models import db

# entity_type → actions recorded for it
AUDITED_ACTIONS = {
    "document": {
        "create", "update", "delete", "submit", "approve_partial",
        "approve", "reject", "archive",
    },
    "capa": {"create", "update", "advance", "verify", "delete"},
    "task": {
        "create", "assign", "complete", "approve", "reject", "cancel",
        "delete", "overdue", "reschedule",
    },
    "delegation": {"create", "revoke"},
    "user": {"role_assign", "role_remove", "manager_change", "deactivate"},
    "role": {"permissions_change"},
}


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False, index=True)
    # NULL for scheduled jobs such as the overdue sweep
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True)
    diff = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity": f"{self.entity_type}/{self.entity_id}",
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}/{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, actor_user_id=None, tenant_id=None, diff=None):
    """Record *action* (``"<entity_type>.<verb>"``) against an entity.

    Raises ValueError for an action outside ``AUDITED_ACTIONS`` so a typo
    cannot silently create a new, unqueried action name.
    """
    prefix, _, verb = action.partition(".")
    if prefix != entity_type or verb not in AUDITED_ACTIONS.get(entity_type, ()):
        raise ValueError(f"Unknown audit action {action!r} for {entity_type!r}")

    row = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff=diff or {},
    )
    db.session.add(row)
    db.session.flush()
    return row

"""
Permission delegation model.

A delegation grants ONE dotted permission string (e.g. "Documents.Approve")
from a delegator to a subordinate. Rows are deactivated on revoke and never
physically deleted, so the grant history stays auditable. Expiry is checked
lazily at read time; there is no sweeper.
"""

from datetime import datetime, timezone

from qms.models import db
from qms.models.base import TenantModel


def _aware(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserPermissionDelegation(TenantModel):
    __tablename__ = "user_permission_delegations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        comment="Subordinate receiving the permission",
    )
    delegated_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    permission = db.Column(db.String(100), nullable=False)
    delegated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    expires_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("user_id", "permission", name="uq_delegation_user_permission"),
        db.Index("ix_delegations_delegator", "delegated_by_id"),
    )

    user = db.relationship("User", foreign_keys=[user_id])
    delegated_by = db.relationship("User", foreign_keys=[delegated_by_id])

    @property
    def is_expired(self):
        expires = _aware(self.expires_at)
        return expires is not None and expires < datetime.now(timezone.utc)

    @property
    def is_valid(self):
        return bool(self.is_active) and not self.is_expired

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "user_name": self.user.full_name if self.user else None,
            "delegated_by_id": self.delegated_by_id,
            "delegated_by_name": self.delegated_by.full_name if self.delegated_by else None,
            "permission": self.permission,
            "delegated_at": self.delegated_at.isoformat() if self.delegated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "is_expired": self.is_expired,
            "is_valid": self.is_valid,
        }

    def __repr__(self):
        return f"<Delegation {self.id}: {self.permission} {self.delegated_by_id}->{self.user_id}>"


# ── Reads shared by the authorization and delegation services ───────────────

def ensure_delegation_table():
    """Raise SchemaNotReadyError when the delegation table is not provisioned."""
    from sqlalchemy import inspect

    from qms.core.exceptions import SchemaNotReadyError

    table = UserPermissionDelegation.__tablename__
    if not inspect(db.engine).has_table(table):
        raise SchemaNotReadyError(table)


def valid_delegated_permissions(user_id):
    """Distinct permission strings from active, unexpired delegations to *user_id*.

    A database error caused by a missing table is re-raised as
    SchemaNotReadyError; any other database error propagates unchanged.
    """
    from sqlalchemy.exc import OperationalError, ProgrammingError

    try:
        rows = UserPermissionDelegation.query.filter_by(user_id=user_id, is_active=True).all()
    except (OperationalError, ProgrammingError):
        db.session.rollback()
        ensure_delegation_table()
        raise
    return {d.permission for d in rows if d.is_valid}

"""
TenantModel — Abstract base class for tenant-scoped QMS entities.

Documents, CAPAs, tasks, delegations and org units inherit from TenantModel
instead of db.Model directly. This adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
  - next_number(tenant_id, prefix) for human-readable numbers
"""

from datetime import datetime, timezone

from qms.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)

    @classmethod
    def next_number(cls, tenant_id, prefix, width=4):
        """Build the next ``PREFIX-YYYY-NNNN`` number for this tenant.

        Continues from the highest number issued this year, so gaps left by
        deleted drafts never cause a collision; uniqueness is backed by a DB
        constraint. Subclasses name their column in ``number_column``.
        """
        column = getattr(cls, cls.number_column)
        year = datetime.now(timezone.utc).year
        stem = f"{prefix}-{year}-"
        issued = (
            db.session.query(column)
            .filter(cls.tenant_id == tenant_id, column.like(f"{stem}%"))
            .all()
        )
        highest = 0
        for (number,) in issued:
            suffix = number[len(stem):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{stem}{highest + 1:0{width}d}"


class VersionedMixin:
    """Optimistic-concurrency check for status-bearing entities.

    Subclasses declare ``version`` and register it as the mapper's
    ``version_id_col`` so every UPDATE is issued as
    ``... WHERE id = :id AND version = :version``; a lost race surfaces as
    ``StaleDataError`` at flush. ``check_version`` additionally lets callers
    that rendered an older copy pass ``expected_version`` up front.
    """

    def check_version(self, expected_version):
        from qms.core.exceptions import StaleObjectError

        if expected_version is not None and int(expected_version) != self.version:
            raise StaleObjectError(type(self).__name__, self.id)

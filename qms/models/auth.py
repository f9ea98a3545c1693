"""
Directory models: tenants, departments, users and their roles.

The reporting line is ``User.manager_id``; everything hierarchical
(subordinates, approval chains, visibility) is derived from it by
``qms.services.hierarchy_service``. A role stores its grants as a
``Permission`` bitmask and gets its privilege tier once, on insert.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from qms.models import db
from qms.models.base import TenantModel


def _now():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class Tenant(db.Model):
    """An isolated customer organisation; slug is the login handle."""
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "name": self.name, "slug": self.slug, "is_active": self.is_active}


class OrganizationUnit(TenantModel):
    """Department. Optional parent gives a department tree."""
    __tablename__ = "organization_units"
    __table_args__ = (db.UniqueConstraint("tenant_id", "code", name="uq_org_unit_tenant_code"),)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text)
    parent_id = db.Column(db.Integer, db.ForeignKey("organization_units.id", ondelete="SET NULL"))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    parent = db.relationship("OrganizationUnit", remote_side=[id], backref="children")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "parent_id": self.parent_id,
            "is_active": self.is_active,
        }


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        # one account per email per tenant
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    email = db.Column(db.String(200), nullable=False)
    password_hash = db.Column(db.String(256))
    full_name = db.Column(db.String(200))
    job_title = db.Column(db.String(200))
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True)
    organization_unit_id = db.Column(
        db.Integer, db.ForeignKey("organization_units.id", ondelete="SET NULL"), index=True,
    )
    # users are deactivated, never deleted; history keeps pointing at them
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    tenant = db.relationship("Tenant", back_populates="users")
    manager = db.relationship("User", remote_side=[id])
    organization_unit = db.relationship("OrganizationUnit")
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )

    @property
    def roles(self):
        return [link.role for link in self.user_roles]

    @property
    def role_names(self):
        return [role.name for role in self.roles]

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "job_title": self.job_title,
            "manager_id": self.manager_id,
            "organization_unit_id": self.organization_unit_id,
            "is_active": self.is_active,
            "last_login_at": _iso(self.last_login_at),
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    def __repr__(self):
        return f"<User {self.id} {self.email}>"


class Role(db.Model):
    __tablename__ = "roles"
    __table_args__ = (db.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),)

    id = db.Column(db.Integer, primary_key=True)
    # NULL tenant_id: platform role visible to every tenant
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"))
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    permissions = db.Column(db.BigInteger, nullable=False, default=0)
    tier = db.Column(db.String(20))
    is_finance = db.Column(db.Boolean)
    is_system = db.Column(db.Boolean, nullable=False, default=False)

    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "tier": self.tier,
            "is_finance": bool(self.is_finance),
            "is_system": self.is_system,
            "permission_flags": int(self.permissions or 0),
        }
        if include_permissions:
            from qms.services.permission_mapper import to_application_permissions
            d["permissions"] = sorted(to_application_permissions(self.permissions or 0))
        return d


@event.listens_for(Role, "before_insert")
def _classify_role_on_insert(mapper, connection, target):
    """Tier and finance flag are fixed at creation; renames do not reclassify."""
    from qms.services.role_tiers import classify_role_name, is_finance_role_name

    if not target.tier:
        target.tier = classify_role_name(target.name).value
    if target.is_finance is None:
        target.is_finance = is_finance_role_name(target.name)


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    assigned_at = db.Column(db.DateTime(timezone=True), default=_now)

    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles")

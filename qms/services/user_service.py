"""
User Service — tenants, org units, users, roles and the reporting line.

Every change that affects what a user may do (role assignment, role
permission edits, manager changes) invalidates the affected permission
cache entries before returning.
"""

import logging
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email

from qms.core.exceptions import ConflictError, NotFoundError, ValidationError
from qms.models import db
from qms.models.audit import write_audit
from qms.models.auth import OrganizationUnit, Role, Tenant, User, UserRole
from qms.services import authorization_service as authz
from qms.services.permission_mapper import Permission
from qms.services.role_tiers import STANDARD_ROLES
from qms.utils.crypto import hash_password, verify_password
from qms.utils.helpers import get_scoped_or_raise

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Tenants & organization units
# ═══════════════════════════════════════════════════════════════
def create_tenant(name: str, slug: str) -> Tenant:
    if Tenant.query.filter_by(slug=slug).first():
        raise ConflictError("Tenant", "slug", slug)
    tenant = Tenant(name=name, slug=slug)
    db.session.add(tenant)
    db.session.commit()
    logger.info("Tenant %s created", slug, extra={"tenant_id": tenant.id})
    return tenant


def create_org_unit(
    tenant_id: int,
    name: str,
    code: str,
    parent_id: int | None = None,
    description: str | None = None,
) -> OrganizationUnit:
    if parent_id is not None:
        get_scoped_or_raise(OrganizationUnit, parent_id, tenant_id, "OrganizationUnit")
    if OrganizationUnit.query.filter_by(tenant_id=tenant_id, code=code).first():
        raise ConflictError("OrganizationUnit", "code", code)
    unit = OrganizationUnit(
        tenant_id=tenant_id, name=name, code=code, parent_id=parent_id, description=description,
    )
    db.session.add(unit)
    db.session.commit()
    return unit


# ═══════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════
def create_user(
    tenant_id: int,
    email: str,
    password: str = None,
    full_name: str = None,
    role_names: list[str] = None,
    manager_id: int = None,
    organization_unit_id: int = None,
    job_title: str = None,
) -> User:
    """Create a user in a tenant, optionally with roles and a manager."""
    try:
        email = validate_email(email, check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}")

    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    if not tenant.is_active:
        raise ValidationError("Tenant is inactive")
    if User.query.filter_by(tenant_id=tenant_id, email=email).first():
        raise ConflictError("User", "email", email)
    if manager_id is not None:
        get_scoped_or_raise(User, manager_id, tenant_id, "User")
    if organization_unit_id is not None:
        get_scoped_or_raise(OrganizationUnit, organization_unit_id, tenant_id, "OrganizationUnit")

    user = User(
        tenant_id=tenant_id,
        email=email,
        password_hash=hash_password(password) if password else None,
        full_name=full_name,
        job_title=job_title,
        manager_id=manager_id,
        organization_unit_id=organization_unit_id,
    )
    db.session.add(user)
    db.session.flush()

    for rn in role_names or []:
        role = _find_role(tenant_id, rn)
        if role is None:
            raise ValidationError(f"Unknown role: {rn}")
        db.session.add(UserRole(user_id=user.id, role_id=role.id))

    db.session.commit()
    logger.info("User %s created", user.email, extra={"tenant_id": tenant_id, "user_id": user.id})
    return user


def authenticate(tenant_slug: str, email: str, password: str) -> User | None:
    """Return the active user matching the credentials, else None."""
    tenant = Tenant.query.filter_by(slug=tenant_slug).first()
    if tenant is None or not tenant.is_active:
        return None
    try:
        email = validate_email(email or "", check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        return None
    user = User.query.filter_by(tenant_id=tenant.id, email=email).first()
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        logger.warning("Failed login for %s in tenant %s", email, tenant_slug)
        return None
    user.last_login_at = datetime.now(timezone.utc)
    db.session.commit()
    return user


def deactivate_user(actor_id: int, user_id: int) -> User:
    """Users are never deleted; deactivation removes every permission."""
    actor = db.session.get(User, actor_id)
    user = get_scoped_or_raise(User, user_id, actor.tenant_id if actor else None, "User")
    user.is_active = False
    write_audit(
        entity_type="user", entity_id=user.id, action="user.deactivate",
        actor_user_id=actor_id, tenant_id=user.tenant_id,
    )
    db.session.commit()
    authz.invalidate_user(user.id)
    logger.info("User %s deactivated", user.id, extra={"tenant_id": user.tenant_id, "user_id": actor_id})
    return user


# ═══════════════════════════════════════════════════════════════
# Reporting line
# ═══════════════════════════════════════════════════════════════
def would_create_cycle(user_id: int, manager_id: int | None) -> bool:
    """True when making *manager_id* the manager of *user_id* closes a loop."""
    if manager_id is None:
        return False
    visited = set()
    current = manager_id
    while current is not None and current not in visited:
        if current == user_id:
            return True
        visited.add(current)
        row = db.session.get(User, current)
        current = row.manager_id if row else None
    return False


def set_manager(actor_id: int, user_id: int, manager_id: int | None) -> User:
    """Change a user's manager; rejects self-management and cycles."""
    actor = db.session.get(User, actor_id)
    tenant_id = actor.tenant_id if actor else None
    user = get_scoped_or_raise(User, user_id, tenant_id, "User")
    if manager_id is not None:
        if manager_id == user_id:
            raise ValidationError("A user cannot be their own manager.")
        get_scoped_or_raise(User, manager_id, tenant_id, "User")
        if would_create_cycle(user_id, manager_id):
            raise ValidationError("This change would create a cycle in the reporting line.")

    previous = user.manager_id
    user.manager_id = manager_id
    write_audit(
        entity_type="user", entity_id=user.id, action="user.manager_change",
        actor_user_id=actor_id, tenant_id=user.tenant_id,
        diff={"manager_id": [previous, manager_id]},
    )
    db.session.commit()
    for uid in {user.id, previous, manager_id} - {None}:
        authz.invalidate_user(uid)
    logger.info("Manager of user %s set to %s", user.id, manager_id,
                extra={"tenant_id": user.tenant_id, "user_id": actor_id})
    return user


# ═══════════════════════════════════════════════════════════════
# Roles
# ═══════════════════════════════════════════════════════════════
def _find_role(tenant_id, name):
    return Role.query.filter(
        (Role.name == name) & ((Role.tenant_id == tenant_id) | (Role.tenant_id.is_(None)))
    ).order_by(Role.tenant_id.desc().nullslast()).first()


def create_role(
    tenant_id: int | None,
    name: str,
    permissions=Permission.NONE,
    description: str = None,
    is_finance: bool = None,
    is_system: bool = False,
) -> Role:
    """Create a role; its tier is classified once from the name on insert."""
    if not (name or "").strip():
        raise ValidationError("Role name is required.")
    if Role.query.filter_by(tenant_id=tenant_id, name=name).first():
        raise ConflictError("Role", "name", name)
    role = Role(
        tenant_id=tenant_id,
        name=name.strip(),
        description=description,
        permissions=int(permissions),
        is_finance=is_finance,
        is_system=is_system,
    )
    db.session.add(role)
    db.session.commit()
    logger.info("Role %s created with tier %s", role.name, role.tier, extra={"tenant_id": tenant_id})
    return role


def update_role_permissions(actor_id: int, role_id: int, permissions) -> Role:
    role = db.session.get(Role, role_id)
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    previous = int(role.permissions or 0)
    role.permissions = int(permissions)
    write_audit(
        entity_type="role", entity_id=role.id, action="role.permissions_change",
        actor_user_id=actor_id, tenant_id=role.tenant_id,
        diff={"permissions": [previous, role.permissions]},
    )
    db.session.commit()
    for ur in role.user_roles.all():
        authz.invalidate_user(ur.user_id)
    return role


def _scoped_user(actor_id, user_id):
    """Target user, constrained to the actor's tenant when an actor is given."""
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    user = db.session.get(User, user_id)
    if user is None or (actor is not None and actor.tenant_id != user.tenant_id):
        return None
    return user


def assign_role(actor_id: int | None, user_id: int, role_id: int) -> UserRole:
    user = _scoped_user(actor_id, user_id)
    role = db.session.get(Role, role_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    if role is None or role.tenant_id not in (None, user.tenant_id):
        raise NotFoundError(resource="Role", resource_id=role_id)
    existing = UserRole.query.filter_by(user_id=user_id, role_id=role_id).first()
    if existing:
        return existing

    link = UserRole(user_id=user_id, role_id=role_id, assigned_by=actor_id)
    db.session.add(link)
    write_audit(
        entity_type="user", entity_id=user_id, action="user.role_assign",
        actor_user_id=actor_id, tenant_id=user.tenant_id, diff={"role": role.name},
    )
    db.session.commit()
    authz.invalidate_user(user_id)
    logger.info("Role %s assigned to user %s", role.name, user_id,
                extra={"tenant_id": user.tenant_id, "user_id": actor_id})
    return link


def remove_role(actor_id: int | None, user_id: int, role_id: int) -> bool:
    user = _scoped_user(actor_id, user_id)
    link = UserRole.query.filter_by(user_id=user_id, role_id=role_id).first()
    if user is None or link is None:
        return False
    db.session.delete(link)
    write_audit(
        entity_type="user", entity_id=user_id, action="user.role_remove",
        actor_user_id=actor_id, tenant_id=user.tenant_id,
        diff={"role_id": role_id},
    )
    db.session.commit()
    authz.invalidate_user(user_id)
    return True


def seed_standard_roles(tenant_id: int) -> list[Role]:
    """Create the standard QMS roles for a tenant; existing names are kept."""
    roles = []
    for name, (description, flags) in STANDARD_ROLES.items():
        role = Role.query.filter_by(tenant_id=tenant_id, name=name).first()
        if role is None:
            role = Role(
                tenant_id=tenant_id, name=name, description=description,
                permissions=int(flags), is_system=True,
            )
            db.session.add(role)
        roles.append(role)
    db.session.commit()
    logger.info("Seeded %d standard roles", len(roles), extra={"tenant_id": tenant_id})
    return roles

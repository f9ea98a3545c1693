"""
User service tests.

Tests cover:
  - Tenant / user creation validation
  - Password authentication
  - Reporting-line changes (self-management and cycle guards)
  - Role seeding, assignment and tenant scoping
  - Deactivation
"""
import pytest

from qms.core.exceptions import ConflictError, NotFoundError, ValidationError
from qms.models.audit import AuditLog
from qms.models.auth import Role, UserRole
from qms.services import authorization_service as authz
from qms.services import hierarchy_service as hs
from qms.services import user_service as users


class TestCreateUser:
    def test_invalid_email(self, tenant):
        with pytest.raises(ValidationError):
            users.create_user(tenant.id, "not-an-email")

    def test_reserved_domain_rejected(self, tenant):
        with pytest.raises(ValidationError, match="Invalid email"):
            users.create_user(tenant.id, "someone@acme.test")

    def test_email_is_normalised(self, tenant):
        user = users.create_user(tenant.id, "New.Hire@Acme-Logistics.com")
        assert user.email == "new.hire@acme-logistics.com"

    def test_duplicate_email(self, org):
        with pytest.raises(ConflictError):
            users.create_user(org.tenant.id, "staff@acme-logistics.com")

    def test_unknown_role(self, tenant):
        with pytest.raises(ValidationError, match="Unknown role"):
            users.create_user(tenant.id, "new@acme-logistics.com", role_names=["Wizard"])

    def test_manager_from_other_tenant(self, org):
        other = users.create_tenant("Globex", "globex")
        with pytest.raises(NotFoundError):
            users.create_user(other.id, "x@globex-corp.com", manager_id=org.tmd.id)

    def test_duplicate_tenant_slug(self, tenant):
        with pytest.raises(ConflictError):
            users.create_tenant("Acme again", "acme")


class TestAuthenticate:
    def test_valid_credentials(self, org):
        user = users.authenticate("acme", "ADMIN@acme-logistics.com", "admin-pass-123")
        assert user is not None
        assert user.id == org.admin.id
        assert user.last_login_at is not None

    def test_wrong_password_or_tenant(self, org):
        assert users.authenticate("acme", "admin@acme-logistics.com", "nope") is None
        assert users.authenticate("globex", "admin@acme-logistics.com", "admin-pass-123") is None

    def test_user_without_password(self, org):
        assert users.authenticate("acme", "staff@acme-logistics.com", "anything") is None

    def test_deactivated_user(self, org):
        users.deactivate_user(org.tmd.id, org.admin.id)
        assert users.authenticate("acme", "admin@acme-logistics.com", "admin-pass-123") is None
        assert authz.get_effective_permissions(org.admin.id) == set()


# ═════════════════════════════════════════════════════════════════════════
# REPORTING LINE
# ═════════════════════════════════════════════════════════════════════════

class TestSetManager:
    def test_move_user(self, org):
        users.set_manager(org.admin.id, org.staff2.id, org.mgr.id)
        assert hs.get_subordinate_ids(org.mgr.id) == {org.staff.id, org.staff2.id}
        assert hs.get_subordinate_ids(org.mgr2.id) == set()
        audit = AuditLog.query.filter_by(action="user.manager_change").one()
        assert audit.diff["manager_id"] == [org.mgr2.id, org.mgr.id]

    def test_self_management_refused(self, org):
        with pytest.raises(ValidationError, match="own manager"):
            users.set_manager(org.admin.id, org.mgr.id, org.mgr.id)

    def test_cycle_refused(self, org):
        assert users.would_create_cycle(org.tmd.id, org.staff.id)
        with pytest.raises(ValidationError, match="cycle"):
            users.set_manager(org.admin.id, org.tmd.id, org.staff.id)
        assert hs.get_manager_chain(org.tmd.id) == []

    def test_clear_manager(self, org):
        users.set_manager(org.admin.id, org.staff.id, None)
        assert hs.get_manager_chain(org.staff.id) == []


# ═════════════════════════════════════════════════════════════════════════
# ROLES
# ═════════════════════════════════════════════════════════════════════════

class TestRoles:
    def test_seed_is_idempotent(self, tenant):
        before = Role.query.filter_by(tenant_id=tenant.id).count()
        users.seed_standard_roles(tenant.id)
        assert Role.query.filter_by(tenant_id=tenant.id).count() == before == 7

    def test_duplicate_role_name(self, tenant):
        with pytest.raises(ConflictError):
            users.create_role(tenant.id, "TMD")

    def test_assign_is_idempotent(self, org):
        role = Role.query.filter_by(tenant_id=org.tenant.id, name="Auditor").one()
        first = users.assign_role(org.admin.id, org.staff.id, role.id)
        second = users.assign_role(org.admin.id, org.staff.id, role.id)
        assert first.id == second.id
        assert UserRole.query.filter_by(user_id=org.staff.id).count() == 2

    def test_assign_across_tenants_refused(self, org):
        other = users.create_tenant("Globex", "globex")
        users.seed_standard_roles(other.id)
        foreign_role = Role.query.filter_by(tenant_id=other.id, name="System Admin").one()
        with pytest.raises(NotFoundError):
            users.assign_role(org.admin.id, org.staff.id, foreign_role.id)

    def test_remove_missing_assignment(self, org):
        role = Role.query.filter_by(tenant_id=org.tenant.id, name="TMD").one()
        assert users.remove_role(org.admin.id, org.staff.id, role.id) is False

"""
Authorization service tests.

Tests cover:
  - Effective permissions per seeded role (mapped + derived ViewAll)
  - Delegated permissions, expiry and monotonicity
  - Point checks: resource access, user-data predicates, delegation rights
  - Degradation: delegation table missing, resolution failure (fail closed)
  - Cache invalidation on role changes
"""
from datetime import datetime, timedelta, timezone

import pytest

from qms.core.exceptions import AuthorizationError, SchemaNotReadyError
from qms.models import db
from qms.models.delegation import UserPermissionDelegation
from qms.services import authorization_service as authz
from qms.services import delegation_service
from qms.services.role_tiers import RoleTier


# ═════════════════════════════════════════════════════════════════════════
# EFFECTIVE PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════

class TestEffectivePermissions:
    def test_staff(self, org):
        assert authz.get_effective_permissions(org.staff.id) == {
            "Documents.View", "Documents.Create", "Documents.Submit",
            "Tasks.View", "Tasks.Create", "Tasks.Complete",
        }

    def test_manager_gets_view_all_for_read_flags(self, org):
        perms = authz.get_effective_permissions(org.mgr.id)
        assert {"Documents.ViewAll", "Tasks.ViewAll", "Capa.ViewAll", "Audits.ViewAll"} <= perms
        assert "Users.ViewAll" not in perms

    def test_executive_gets_users_view_all(self, org):
        assert authz.has_permission(org.tmd.id, "Users.ViewAll")

    def test_admin_has_no_derived_view_all(self, org):
        perms = authz.get_effective_permissions(org.admin.id)
        assert "Users.ManageRoles" in perms
        assert not any(p.endswith(".ViewAll") for p in perms)

    def test_auditor_is_read_only(self, org):
        perms = authz.get_effective_permissions(org.auditor.id)
        assert perms == {"Documents.View", "Audits.View", "AuditLogs.View", "AuditLogs.Export"}

    def test_unknown_and_inactive_users_have_nothing(self, org):
        assert authz.get_effective_permissions(None) == set()
        assert authz.get_effective_permissions(99999) == set()
        org.staff.is_active = False
        db.session.commit()
        authz.invalidate_user(org.staff.id)
        assert authz.get_effective_permissions(org.staff.id) == set()

    def test_tiers(self, org):
        assert authz.get_user_tier(org.deputy.id) == RoleTier.DEPUTY
        assert authz.get_user_tier(org.auditor.id) == RoleTier.AUDITOR
        assert authz.get_user_tier(None) == RoleTier.STAFF

    def test_is_in_role(self, org):
        assert authz.is_in_role(org.tmd.id, "tmd")
        assert not authz.is_in_role(org.staff.id, "TMD")


# ═════════════════════════════════════════════════════════════════════════
# DELEGATED PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════

class TestDelegatedPermissions:
    def test_delegation_adds_exactly_one_permission(self, org):
        before = authz.get_effective_permissions(org.staff.id)
        res = delegation_service.delegate(org.mgr.id, org.staff.id, "Documents.Approve")
        assert res.success
        after = authz.get_effective_permissions(org.staff.id)
        assert after == before | {"Documents.Approve"}

    def test_revocation_removes_only_that_permission(self, org):
        before = authz.get_effective_permissions(org.staff.id)
        first = delegation_service.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        delegation_service.delegate(org.mgr.id, org.staff.id, "Documents.Edit")
        delegation_service.revoke(org.mgr.id, first.id)
        assert authz.get_effective_permissions(org.staff.id) == before | {"Documents.Edit"}

    def test_expired_delegation_is_ignored(self, org):
        d = delegation_service.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        d.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.session.commit()
        authz.invalidate_user(org.staff.id)
        assert not authz.has_permission(org.staff.id, "Documents.Approve")

    def test_inactive_row_is_ignored(self, org):
        db.session.add(UserPermissionDelegation(
            tenant_id=org.tenant.id, user_id=org.staff.id, delegated_by_id=org.mgr.id,
            permission="Documents.Approve", is_active=False,
        ))
        db.session.commit()
        assert not authz.has_permission(org.staff.id, "Documents.Approve")

    def test_missing_delegation_table_degrades(self, org, monkeypatch):
        def _missing(user_id):
            raise SchemaNotReadyError("user_permission_delegations")

        monkeypatch.setattr(authz, "valid_delegated_permissions", _missing)
        assert authz.get_effective_permissions(org.staff.id) == {
            "Documents.View", "Documents.Create", "Documents.Submit",
            "Tasks.View", "Tasks.Create", "Tasks.Complete",
        }

    def test_resolution_failure_denies(self, org, monkeypatch):
        def _boom(user_id):
            raise RuntimeError("database gone")

        monkeypatch.setattr(authz, "compute_permissions", _boom)
        assert authz.get_effective_permissions(org.tmd.id) == set()
        assert not authz.has_permission(org.tmd.id, "Documents.View")


# ═════════════════════════════════════════════════════════════════════════
# POINT CHECKS
# ═════════════════════════════════════════════════════════════════════════

class TestPointChecks:
    def test_any_and_all(self, org):
        assert authz.has_any_permission(org.staff.id, ["Capa.View", "Documents.View"])
        assert not authz.has_all_permissions(org.staff.id, ["Capa.View", "Documents.View"])

    def test_can_access_resource(self, org):
        assert authz.can_access_resource(org.staff.id, "Documents")
        assert not authz.can_access_resource(org.staff.id, "Capa")
        assert authz.can_access_resource(org.mgr.id, "Capa", 1, "Edit")
        assert not authz.can_access_resource(org.mgr.id, "Capa", 1, "Delete")

    def test_view_all_satisfies_reads_only(self, org):
        delegation_service.delegate(org.tmd.id, org.mgr.id, "Users.ViewAll")
        assert authz.can_access_resource(org.mgr.id, "Users", action="View")
        assert not authz.can_access_resource(org.mgr.id, "Users", action="Edit")

    def test_can_view_user_data(self, org):
        assert authz.can_view_user_data(org.staff.id, org.staff.id)
        assert authz.can_view_user_data(org.mgr.id, org.staff.id)
        assert not authz.can_view_user_data(org.mgr.id, org.staff2.id)
        # ViewAll alone is enough here
        assert authz.can_view_user_data(org.tmd.id, org.admin.id)

    def test_can_view_subordinate_data(self, org):
        assert authz.can_view_subordinate_data(org.staff.id, org.staff.id)
        assert authz.can_view_subordinate_data(org.tmd.id, org.staff2.id)
        # ViewAll without the reporting line is not enough
        assert not authz.can_view_subordinate_data(org.tmd.id, org.admin.id)
        # reporting line without ViewAll is not enough either
        assert not authz.can_view_subordinate_data(org.mgr.id, org.staff.id)

    def test_can_delegate_permission(self, org):
        assert authz.can_delegate_permission(org.mgr.id, org.staff.id, "Documents.Approve")
        assert not authz.can_delegate_permission(org.mgr.id, org.staff2.id, "Documents.Approve")
        assert not authz.can_delegate_permission(org.staff.id, org.mgr.id, "Documents.View")
        assert not authz.can_delegate_permission(org.mgr.id, org.mgr.id, "Documents.Approve")
        assert not authz.can_delegate_permission(org.mgr.id, org.staff.id, "Users.ManageRoles")

    def test_authorize_raises(self, org):
        authz.authorize(org.tmd.id, "Capa.Delete")
        with pytest.raises(AuthorizationError):
            authz.authorize(org.staff.id, "Capa.Delete")


# ═════════════════════════════════════════════════════════════════════════
# CACHE INVALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestCacheInvalidation:
    def test_role_assignment_refreshes_permissions(self, org):
        from qms.models.auth import Role
        from qms.services import user_service

        assert not authz.has_permission(org.staff.id, "AuditLogs.View")
        auditor_role = Role.query.filter_by(tenant_id=org.tenant.id, name="Auditor").one()
        user_service.assign_role(org.admin.id, org.staff.id, auditor_role.id)
        assert authz.has_permission(org.staff.id, "AuditLogs.View")
        assert "Auditor" in authz.get_user_roles(org.staff.id)

        user_service.remove_role(org.admin.id, org.staff.id, auditor_role.id)
        assert not authz.has_permission(org.staff.id, "AuditLogs.View")

    def test_role_permission_edit_refreshes_holders(self, org):
        from qms.models.auth import Role
        from qms.services import user_service
        from qms.services.permission_mapper import Permission

        staff_role = Role.query.filter_by(tenant_id=org.tenant.id, name="Staff").one()
        assert not authz.has_permission(org.staff2.id, "Capa.View")
        user_service.update_role_permissions(
            org.admin.id, staff_role.id, staff_role.permissions | Permission.CAPA_READ,
        )
        assert authz.has_permission(org.staff2.id, "Capa.View")

"""
Permission delegation service tests.

Tests cover:
  - Delegate: validation, downward-only rule, reactivation instead of duplicates
  - Chained delegation (a delegated permission can be passed further down)
  - Revoke: delegator only, administrative force-revoke, tenant isolation
  - Side effects: audit rows, notifications, received/granted queries
  - Deactivated users hold and pass on nothing
"""
from qms.models.audit import AuditLog
from qms.models.delegation import UserPermissionDelegation
from qms.models.notification import Notification
from qms.services import authorization_service as authz
from qms.services import delegation_service as ds


# ═════════════════════════════════════════════════════════════════════════
# DELEGATE
# ═════════════════════════════════════════════════════════════════════════

class TestDelegate:
    def test_delegate_to_subordinate(self, org):
        res = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve", expires_after_days=7)
        assert res.success
        d = res.value
        assert d.permission == "Documents.Approve"
        assert d.delegated_by_id == org.mgr.id
        assert d.expires_at is not None
        assert d.is_valid

    def test_side_effects(self, org):
        d = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        audit = AuditLog.query.filter_by(entity_type="delegation", entity_id=str(d.id)).one()
        assert audit.action == "delegation.create"
        assert audit.actor_user_id == org.mgr.id
        assert Notification.query.filter_by(user_id=org.staff.id, category="delegation").count() == 1

    def test_unknown_permission(self, org):
        res = ds.delegate(org.mgr.id, org.staff.id, "Documents.Teleport")
        assert res.error_code == "Delegation.InvalidPermission"
        assert res.http_status == 422

    def test_invalid_expiry(self, org):
        for value in (0, -3, "soon"):
            res = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve", expires_after_days=value)
            assert res.error_code == "Delegation.InvalidExpiry"

    def test_not_a_subordinate(self, org):
        res = ds.delegate(org.mgr.id, org.staff2.id, "Documents.Approve")
        assert res.error_code == "Delegation.NotAllowed"
        assert res.http_status == 403
        assert "subordinate" in res.message

    def test_cannot_delegate_what_you_do_not_hold(self, org):
        res = ds.delegate(org.mgr.id, org.staff.id, "Users.ManageRoles")
        assert res.error_code == "Delegation.NotAllowed"

    def test_upward_delegation_refused(self, org):
        res = ds.delegate(org.staff.id, org.mgr.id, "Documents.Create")
        assert not res.success

    def test_redelegation_reactivates_single_row(self, org):
        first = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        ds.revoke(org.mgr.id, first.id)
        second = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve", expires_after_days=3).value
        assert second.id == first.id
        assert second.is_active
        assert second.revoked_at is None
        assert UserPermissionDelegation.query.filter_by(user_id=org.staff.id).count() == 1

    def test_chained_delegation(self, org):
        # tmd → deputy → mgr: the deputy holds ManageRoles only by delegation
        assert ds.delegate(org.tmd.id, org.deputy.id, "Users.ManageRoles").success
        assert ds.delegate(org.deputy.id, org.mgr.id, "Users.ManageRoles").success
        assert authz.has_permission(org.mgr.id, "Users.ManageRoles")


# ═════════════════════════════════════════════════════════════════════════
# REVOKE
# ═════════════════════════════════════════════════════════════════════════

class TestRevoke:
    def test_delegator_revokes(self, org):
        d = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        assert authz.has_permission(org.staff.id, "Documents.Approve")
        res = ds.revoke(org.mgr.id, d.id)
        assert res.success
        assert res.value.is_active is False
        assert res.value.revoked_by_id == org.mgr.id
        assert not authz.has_permission(org.staff.id, "Documents.Approve")
        assert AuditLog.query.filter_by(action="delegation.revoke").count() == 1

    def test_other_user_cannot_revoke(self, org):
        d = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        res = ds.revoke(org.deputy.id, d.id)
        assert res.error_code == "Delegation.Forbidden"

    def test_force_requires_manage_roles(self, org):
        d = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        assert ds.revoke(org.deputy.id, d.id, force=True).error_code == "Delegation.Forbidden"
        res = ds.revoke(org.admin.id, d.id, force=True)
        assert res.success
        assert AuditLog.query.filter_by(action="delegation.revoke").one().diff["forced"] is True

    def test_other_tenant_sees_not_found(self, org):
        from qms.services.user_service import create_tenant, create_user, seed_standard_roles

        other = create_tenant("Globex", "globex")
        seed_standard_roles(other.id)
        outsider = create_user(other.id, "root@globex-corp.com", role_names=["System Admin"])
        d = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve").value
        res = ds.revoke(outsider.id, d.id, force=True)
        assert res.error_code == "Delegation.NotFound"
        assert res.http_status == 404


class TestQueries:
    def test_granted_and_received(self, org):
        ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve")
        ds.delegate(org.mgr.id, org.staff.id, "Documents.Edit")
        assert {d.permission for d in ds.get_my_delegations(org.mgr.id)} == {
            "Documents.Approve", "Documents.Edit",
        }
        assert len(ds.get_received_delegations(org.staff.id)) == 2
        assert ds.get_received_delegations(org.mgr.id) == []
        assert ds.get_delegated_permissions(org.staff.id) == {"Documents.Approve", "Documents.Edit"}


class TestDeactivatedUsers:
    def test_deactivation_drops_delegated_permissions(self, org):
        from qms.services.user_service import deactivate_user

        ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve")
        assert authz.has_permission(org.staff.id, "Documents.Approve")

        deactivate_user(org.admin.id, org.staff.id)
        assert authz.get_effective_permissions(org.staff.id) == set()
        assert authz.compute_permissions(org.staff.id) == set()

    def test_deactivated_delegator_cannot_delegate(self, org):
        from qms.services.user_service import deactivate_user

        deactivate_user(org.admin.id, org.mgr.id)
        res = ds.delegate(org.mgr.id, org.staff.id, "Documents.Approve")
        assert res.error_code == "Delegation.NotAllowed"

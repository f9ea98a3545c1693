"""
Permission mapper unit tests.

Tests cover:
  - Bitmask → dotted strings (multi-string flags, unmapped bits)
  - Derived ViewAll strings
  - Reverse lookup and the full vocabulary
  - Runtime registration of a new flag mapping
"""
import pytest

from qms.services import permission_mapper as pm
from qms.services.permission_mapper import Permission


# ═════════════════════════════════════════════════════════════════════════
# FORWARD MAPPING
# ═════════════════════════════════════════════════════════════════════════

class TestToApplicationPermissions:
    def test_read_and_task_create(self):
        perms = pm.to_application_permissions(Permission.DOCUMENT_READ | Permission.TASK_CREATE)
        assert perms == {"Documents.View", "Tasks.Create", "Tasks.Complete"}

    def test_approve_implies_reject(self):
        perms = pm.to_application_permissions(Permission.DOCUMENT_APPROVE)
        assert perms == {"Documents.Approve", "Documents.Reject"}

    def test_empty_mask(self):
        assert pm.to_application_permissions(0) == set()
        assert pm.to_application_permissions(None) == set()

    def test_unmapped_bits_are_ignored(self):
        assert pm.to_application_permissions(1 << 40) == set()
        assert pm.to_application_permissions((1 << 40) | Permission.CAPA_READ) == {"Capa.View"}

    def test_all_contains_admin_strings_but_no_view_all(self):
        perms = pm.to_application_permissions(Permission.ALL)
        assert {"Users.ManageRoles", "Roles.ManagePermissions", "AuditLogs.View"} <= perms
        assert not any(p.endswith(".ViewAll") for p in perms)

    def test_adding_a_flag_never_removes_strings(self):
        base = Permission.DOCUMENT_READ | Permission.TASK_READ
        smaller = pm.to_application_permissions(base)
        larger = pm.to_application_permissions(base | Permission.CAPA_VERIFY)
        assert smaller < larger


# ═════════════════════════════════════════════════════════════════════════
# VIEW-ALL DERIVATION
# ═════════════════════════════════════════════════════════════════════════

class TestViewAll:
    def test_view_all_per_read_flag(self):
        assert pm.view_all_for_hierarchy_roles(has_doc_read=True, has_user_read=True) == {
            "Documents.ViewAll", "Users.ViewAll",
        }

    def test_no_reads_no_view_all(self):
        assert pm.view_all_for_hierarchy_roles() == set()

    def test_from_flags(self):
        perms = pm.view_all_for_flags(Permission.DOCUMENT_READ | Permission.CAPA_READ | Permission.CAPA_EDIT)
        assert perms == {"Documents.ViewAll", "Capa.ViewAll"}


# ═════════════════════════════════════════════════════════════════════════
# REVERSE LOOKUP & REGISTRATION
# ═════════════════════════════════════════════════════════════════════════

class TestReverseAndRegistry:
    def test_reverse_lookup(self):
        assert pm.from_application_permission("Documents.Reject") == Permission.DOCUMENT_APPROVE
        assert pm.from_application_permission("Tasks.Assign") == Permission.TASK_ASSIGN

    def test_view_all_has_no_flag(self):
        assert pm.from_application_permission("Documents.ViewAll") is None
        assert pm.from_application_permission("Nope.Nothing") is None

    def test_vocabulary_includes_derived_strings(self):
        names = pm.all_application_permissions()
        assert "Tasks.ViewAll" in names
        assert "Documents.Archive" in names

    def test_register_mapping(self, monkeypatch):
        monkeypatch.setattr(pm, "PERMISSION_MAP", dict(pm.PERMISSION_MAP))
        pm.register_permission_mapping(Permission.STOCK_MANAGE, "Stock.Manage", "Stock.Adjust")
        assert pm.to_application_permissions(Permission.STOCK_MANAGE) == {"Stock.Manage", "Stock.Adjust"}
        assert "Stock.Adjust" in pm.all_application_permissions()

    def test_register_requires_names(self):
        with pytest.raises(ValueError):
            pm.register_permission_mapping(Permission.STOCK_MANAGE)

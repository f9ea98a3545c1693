"""
Role tier classification tests.

Tests cover:
  - Name → tier classification for the seeded role names
  - Finance detection
  - Tier precedence helpers
  - Tier and finance flag stored once on Role insert
"""
from qms.services import role_tiers
from qms.services.role_tiers import RoleTier


class TestClassifyRoleName:
    def test_seeded_names(self):
        expected = {
            "System Admin": RoleTier.ADMIN,
            "TMD": RoleTier.EXECUTIVE,
            "Country Manager": RoleTier.EXECUTIVE,
            "Deputy Country Manager": RoleTier.DEPUTY,
            "Department Manager": RoleTier.MANAGER,
            "Finance Manager": RoleTier.MANAGER,
            "Auditor": RoleTier.AUDITOR,
            "Staff": RoleTier.STAFF,
        }
        for name, tier in expected.items():
            assert role_tiers.classify_role_name(name) == tier, name

    def test_case_and_whitespace_insensitive(self):
        assert role_tiers.classify_role_name("  tmd ") == RoleTier.EXECUTIVE
        assert role_tiers.classify_role_name("DEPUTY   manager") == RoleTier.DEPUTY

    def test_unknown_and_empty_names_are_staff(self):
        assert role_tiers.classify_role_name("Warehouse Clerk") == RoleTier.STAFF
        assert role_tiers.classify_role_name(None) == RoleTier.STAFF

    def test_finance_names(self):
        assert role_tiers.is_finance_role_name("Finance Manager")
        assert role_tiers.is_finance_role_name("Finance, Accounting & Logistics Manager")
        assert not role_tiers.is_finance_role_name("Department Manager")


class TestTierHelpers:
    def test_highest_tier(self):
        assert role_tiers.highest_tier([]) == RoleTier.STAFF
        assert role_tiers.highest_tier([RoleTier.MANAGER, "executive", RoleTier.AUDITOR]) == RoleTier.EXECUTIVE

    def test_coerce_unknown_value(self):
        assert role_tiers.coerce_tier("bogus") == RoleTier.STAFF
        assert role_tiers.coerce_tier("deputy") == RoleTier.DEPUTY

    def test_tier_sets(self):
        assert RoleTier.AUDITOR in role_tiers.ORG_WIDE_READERS
        assert RoleTier.MANAGER not in role_tiers.ORG_WIDE_READERS
        assert RoleTier.ADMIN not in role_tiers.HIERARCHY_TIERS


class TestRoleInsert:
    def test_tier_assigned_on_insert(self, tenant):
        from qms.services.user_service import create_role

        role = create_role(tenant.id, "Quality Manager")
        assert role.tier == "manager"
        assert role.is_finance is False

    def test_finance_flag_derived_on_insert(self, tenant):
        from qms.services.user_service import create_role

        role = create_role(tenant.id, "Finance")
        assert role.is_finance is True
        assert role.tier == "staff"

    def test_explicit_finance_flag_kept(self, tenant):
        from qms.services.user_service import create_role

        role = create_role(tenant.id, "Procurement Lead", is_finance=True)
        assert role.is_finance is True

    def test_seeded_roles_carry_tiers(self, tenant):
        from qms.models.auth import Role

        tiers = {r.name: r.tier for r in Role.query.filter_by(tenant_id=tenant.id)}
        assert tiers["TMD"] == "executive"
        assert tiers["Auditor"] == "auditor"
        assert Role.query.filter_by(tenant_id=tenant.id, name="Finance Manager").one().is_finance

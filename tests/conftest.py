"""
Shared pytest fixtures for the Kasah QMS test suite.

Provides:
    - app: Flask application (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: One tenant with seeded roles, two departments and a reporting line
    - auth_header: Bearer header for a user, minted without a login round-trip

Reporting line built by ``org``::

    tmd ─┬─ deputy ─┬─ mgr  (QA)  ── staff  (QA)
         │          └─ mgr2 (OPS) ── staff2 (OPS)
         └─ finance
    admin, auditor: no manager
"""

import os
from types import SimpleNamespace

import pytest

os.environ["QMS_CACHE_URL"] = "memory://"

from qms import create_app  # noqa: E402
from qms.models import db as _db  # noqa: E402
from qms.services import cache_service  # noqa: E402
from qms.services.authorization_service import invalidate_all_cache  # noqa: E402

cache_service.reset_backend()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused after every recreate; stale cache entries would
        # hand one test's permissions to the next test's user
        invalidate_all_cache()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Org chart ────────────────────────────────────────────────────────────


def make_user(tenant_id, email, role=None, manager=None, unit=None, password=None):
    from qms.services.user_service import create_user

    return create_user(
        tenant_id,
        email,
        password=password,
        full_name=email.split("@")[0].title(),
        role_names=[role] if role else [],
        manager_id=manager.id if manager else None,
        organization_unit_id=unit.id if unit else None,
    )


@pytest.fixture()
def tenant():
    from qms.services.user_service import create_tenant, seed_standard_roles

    t = create_tenant("Acme Logistics", "acme")
    seed_standard_roles(t.id)
    return t


@pytest.fixture()
def org(tenant):
    """Seeded tenant with the reporting line drawn in the module docstring."""
    from qms.services.user_service import create_org_unit

    qa = create_org_unit(tenant.id, "Quality Assurance", "QA")
    ops = create_org_unit(tenant.id, "Operations", "OPS")

    admin = make_user(tenant.id, "admin@acme-logistics.com", "System Admin", password="admin-pass-123")
    tmd = make_user(tenant.id, "tmd@acme-logistics.com", "TMD")
    deputy = make_user(tenant.id, "deputy@acme-logistics.com", "Deputy Country Manager", manager=tmd)
    mgr = make_user(tenant.id, "mgr@acme-logistics.com", "Department Manager", manager=deputy, unit=qa)
    mgr2 = make_user(tenant.id, "mgr2@acme-logistics.com", "Department Manager", manager=deputy, unit=ops)
    finance = make_user(tenant.id, "finance@acme-logistics.com", "Finance Manager", manager=tmd)
    staff = make_user(tenant.id, "staff@acme-logistics.com", "Staff", manager=mgr, unit=qa)
    staff2 = make_user(tenant.id, "staff2@acme-logistics.com", "Staff", manager=mgr2, unit=ops)
    auditor = make_user(tenant.id, "auditor@acme-logistics.com", "Auditor")

    return SimpleNamespace(
        tenant=tenant, qa=qa, ops=ops,
        admin=admin, tmd=tmd, deputy=deputy, mgr=mgr, mgr2=mgr2,
        finance=finance, staff=staff, staff2=staff2, auditor=auditor,
    )


@pytest.fixture()
def auth_header():
    """Return a callable: user -> {"Authorization": "Bearer ..."}."""
    from qms.services.jwt_service import generate_access_token

    def _header(user):
        token = generate_access_token(user.id, user.tenant_id, user.role_names)
        return {"Authorization": f"Bearer {token}"}

    return _header

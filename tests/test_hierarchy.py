"""
Hierarchy service tests.

Tests cover:
  - Direct and recursive subordinates
  - Manager chain walk
  - Visible user ids and department membership
  - Termination on corrupted (cyclic) manager pointers
  - Random reporting graphs: walk termination, delegation bounds, cycle refusal
"""
import random

import pytest

from qms.core.exceptions import ValidationError
from qms.models import db
from qms.models.auth import User
from qms.models.delegation import UserPermissionDelegation
from qms.services import authorization_service as authz
from qms.services import delegation_service as ds
from qms.services import hierarchy_service as hs
from qms.services import user_service


class TestSubordinates:
    def test_direct_reports(self, org):
        assert hs.get_subordinate_ids(org.tmd.id) == {org.deputy.id, org.finance.id}

    def test_recursive_reports(self, org):
        assert hs.get_subordinate_ids(org.tmd.id, recursive=True) == {
            org.deputy.id, org.finance.id, org.mgr.id, org.mgr2.id, org.staff.id, org.staff2.id,
        }

    def test_leaf_has_no_reports(self, org):
        assert hs.get_subordinate_ids(org.staff.id, recursive=True) == set()

    def test_is_subordinate(self, org):
        assert hs.is_subordinate(org.deputy.id, org.staff.id)
        assert not hs.is_subordinate(org.staff.id, org.deputy.id)
        assert not hs.is_subordinate(org.mgr.id, org.staff2.id)
        assert not hs.is_subordinate(org.mgr.id, org.mgr.id)

    def test_inactive_users_drop_out(self, org):
        org.staff.is_active = False
        db.session.commit()
        assert hs.get_subordinate_ids(org.mgr.id) == set()
        assert not hs.is_manager(org.mgr.id)


class TestChainAndVisibility:
    def test_manager_chain_nearest_first(self, org):
        assert hs.get_manager_chain(org.staff.id) == [org.mgr.id, org.deputy.id, org.tmd.id]
        assert hs.get_manager_chain(org.tmd.id) == []

    def test_visible_ids(self, org):
        assert hs.get_visible_user_ids(org.staff.id) == {org.staff.id}
        assert hs.get_visible_user_ids(org.mgr.id) == {org.mgr.id, org.staff.id}
        assert hs.get_visible_user_ids(org.deputy.id) == {
            org.deputy.id, org.mgr.id, org.mgr2.id, org.staff.id, org.staff2.id,
        }

    def test_department_members(self, org):
        assert hs.get_department_user_ids(org.qa.id) == {org.mgr.id, org.staff.id}
        assert hs.get_department_user_ids(None) == set()


# ═════════════════════════════════════════════════════════════════════════
# CYCLES
# ═════════════════════════════════════════════════════════════════════════

class TestCycleTermination:
    """Manager pointers corrupted behind the service's back still terminate."""

    def _close_loop(self, org):
        org.tmd.manager_id = org.staff.id
        db.session.commit()

    def test_recursive_walk_terminates_without_self(self, org):
        self._close_loop(org)
        subs = hs.get_subordinate_ids(org.mgr.id, recursive=True)
        assert org.mgr.id not in subs
        assert {org.staff.id, org.tmd.id, org.deputy.id} <= subs

    def test_chain_walk_terminates(self, org):
        self._close_loop(org)
        assert hs.get_manager_chain(org.staff.id) == [org.mgr.id, org.deputy.id, org.tmd.id]

    def test_is_subordinate_terminates(self, org):
        self._close_loop(org)
        assert hs.is_subordinate(org.staff.id, org.mgr.id)
        assert not hs.is_subordinate(org.staff.id, org.admin.id)


# ═════════════════════════════════════════════════════════════════════════
# RANDOM GRAPHS
# ═════════════════════════════════════════════════════════════════════════


ROLE_POOL = ["Deputy Country Manager", "Department Manager", "Staff", "Staff"]
PERMISSION_POOL = ["Documents.Approve", "Documents.Edit", "Capa.Create", "Tasks.Assign"]


def _random_people(tenant, rng, size=9):
    return [
        user_service.create_user(
            tenant.id, f"person{i}@acme-logistics.com", role_names=[rng.choice(ROLE_POOL)],
        ).id
        for i in range(size)
    ]


def _reachable(children, start):
    seen, stack = set(), list(children.get(start, ()))
    while stack:
        uid = stack.pop()
        if uid in seen or uid == start:
            continue
        seen.add(uid)
        stack.extend(children.get(uid, ()))
    return seen


@pytest.mark.parametrize("seed", range(6))
class TestRandomReportingLines:
    def _wire(self, ids, rng):
        """Arbitrary manager pointers written straight to the rows; loops allowed."""
        for uid in ids:
            db.session.get(User, uid).manager_id = rng.choice([None, None] + ids)
        db.session.commit()
        authz.invalidate_all_cache()
        children = {}
        for uid in ids:
            manager_id = db.session.get(User, uid).manager_id
            if manager_id is not None:
                children.setdefault(manager_id, set()).add(uid)
        return children

    def test_walks_terminate_and_match_reachability(self, tenant, seed):
        rng = random.Random(seed)
        ids = _random_people(tenant, rng)
        children = self._wire(ids, rng)

        for uid in ids:
            subs = hs.get_subordinate_ids(uid, recursive=True)
            assert uid not in subs
            assert subs == _reachable(children, uid)
            chain = hs.get_manager_chain(uid)
            assert uid not in chain
            assert len(chain) == len(set(chain)) <= len(ids)

    def test_delegation_stays_within_holder_and_subtree(self, tenant, seed):
        rng = random.Random(seed)
        ids = _random_people(tenant, rng)
        children = self._wire(ids, rng)

        for _ in range(25):
            delegator, target = rng.choice(ids), rng.choice(ids)
            permission = rng.choice(PERMISSION_POOL)
            expected = (
                delegator != target
                and permission in authz.compute_permissions(delegator)
                and target in _reachable(children, delegator)
            )
            assert ds.delegate(delegator, target, permission).success is expected

        for d in UserPermissionDelegation.query.filter_by(is_active=True):
            assert d.user_id != d.delegated_by_id
            assert d.user_id in _reachable(children, d.delegated_by_id)

    def test_service_never_closes_a_loop(self, org, seed):
        rng = random.Random(seed)
        ids = _random_people(org.tenant, rng)
        for _ in range(30):
            uid, manager_id = rng.choice(ids), rng.choice([None] + ids)
            try:
                user_service.set_manager(org.admin.id, uid, manager_id)
            except ValidationError:
                assert manager_id == uid or user_service.would_create_cycle(uid, manager_id)

        for uid in ids:
            steps, current = 0, db.session.get(User, uid).manager_id
            while current is not None:
                steps += 1
                assert steps <= len(ids)
                current = db.session.get(User, current).manager_id

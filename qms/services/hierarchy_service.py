"""
Hierarchy Service — manager/subordinate graph over ``User.manager_id``.

All walks track visited ids, so they terminate even if bad data introduced a
cycle in the manager pointers; the result is then best-effort rather than an
error. Every public function fails soft: on a database error it logs and
returns an empty set / False / [self] instead of raising, because these
lookups gate visibility checks that must not crash the request.

Usage:
    from qms.services import hierarchy_service as hs

    hs.get_subordinate_ids(manager_id, recursive=True)
    hs.is_subordinate(manager_id, user_id)
    hs.get_manager_chain(user_id)
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from qms.models import db
from qms.models.auth import User

logger = logging.getLogger(__name__)


def _direct_reports(manager_ids) -> set[int]:
    rows = (
        db.session.query(User.id)
        .filter(User.manager_id.in_(list(manager_ids)), User.is_active.is_(True))
        .all()
    )
    return {r[0] for r in rows}


def get_subordinate_ids(manager_id: int, recursive: bool = False) -> set[int]:
    """Direct reports, or the full transitive closure when *recursive*.

    Breadth-first, one query per level. The manager itself is never included,
    even when a cycle leads back to it.
    """
    try:
        direct = _direct_reports([manager_id])
        if not recursive:
            direct.discard(manager_id)
            return direct

        visited: set[int] = {manager_id}
        result: set[int] = set()
        frontier = direct - visited
        while frontier:
            result |= frontier
            visited |= frontier
            frontier = _direct_reports(frontier) - visited
        return result
    except SQLAlchemyError:
        logger.error("Failed to resolve subordinates for user %s", manager_id, exc_info=True)
        return set()


def is_subordinate(manager_id: int, user_id: int) -> bool:
    """True when *user_id* reports to *manager_id* directly or transitively."""
    if manager_id is None or user_id is None or manager_id == user_id:
        return False
    if user_id in get_subordinate_ids(manager_id, recursive=False):
        return True
    return user_id in get_subordinate_ids(manager_id, recursive=True)


def get_manager_chain(user_id: int) -> list[int]:
    """Ancestors of *user_id*, nearest manager first, excluding the user.

    Stops at the top of the tree or at the first repeated id.
    """
    chain: list[int] = []
    try:
        visited = {user_id}
        user = db.session.get(User, user_id)
        current = user.manager_id if user else None
        while current is not None and current not in visited:
            chain.append(current)
            visited.add(current)
            manager = db.session.get(User, current)
            current = manager.manager_id if manager else None
        if current is not None:
            logger.warning("Cycle detected in manager chain of user %s at %s", user_id, current)
        return chain
    except SQLAlchemyError:
        logger.error("Failed to walk manager chain for user %s", user_id, exc_info=True)
        return chain


def is_manager(user_id: int) -> bool:
    """Structural definition: has at least one active direct report."""
    return bool(get_subordinate_ids(user_id, recursive=False))


def get_visible_user_ids(user_id: int) -> set[int]:
    """Self, plus every recursive subordinate when the user manages anyone."""
    try:
        visible = {user_id}
        if is_manager(user_id):
            visible |= get_subordinate_ids(user_id, recursive=True)
        return visible
    except SQLAlchemyError:
        logger.error("Failed to compute visible users for %s", user_id, exc_info=True)
        return {user_id}


def get_department_user_ids(org_unit_id: int | None) -> set[int]:
    """Active users placed in *org_unit_id*."""
    if org_unit_id is None:
        return set()
    try:
        rows = (
            db.session.query(User.id)
            .filter(User.organization_unit_id == org_unit_id, User.is_active.is_(True))
            .all()
        )
        return {r[0] for r in rows}
    except SQLAlchemyError:
        logger.error("Failed to list users of org unit %s", org_unit_id, exc_info=True)
        return set()

"""
Kasah QMS
Visibility Service — row scoping for document and task lists.

Who sees what:
    - admin / executive / deputy / auditor tiers: every row in the tenant
    - everyone else: rows they own or act on, rows owned by their recursive
      subordinates (managers only), and rows targeted at their org unit
      or at them personally

A document with no target department is NOT visible to a department just
because nobody restricted it; the creator's place in the hierarchy decides.

Usage:
    from qms.services import visibility_service as vis

    docs = vis.visible_documents_query(user.id).order_by(Document.created_at.desc()).all()
    if not vis.can_view_task(user.id, task): ...
"""

from __future__ import annotations

import logging

from sqlalchemy import false, or_

from qms.models import db
from qms.models.auth import User
from qms.models.document import Document
from qms.models.task import QmsTask
from qms.services import authorization_service, hierarchy_service
from qms.services.role_tiers import ORG_WIDE_READERS, RoleTier

logger = logging.getLogger(__name__)


def _viewer(user_id):
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def has_org_wide_visibility(user_id: int) -> bool:
    tier = authorization_service.get_user_tier(user_id)
    if tier == RoleTier.AUDITOR:
        logger.debug("User %s has auditor visibility (read-only)", user_id)
    return tier in ORG_WIDE_READERS


# ── Documents ───────────────────────────────────────────────────────────────


def visible_documents_query(user_id: int, include_templates: bool = False):
    """Query of documents *user_id* may list, tenant-scoped."""
    user = _viewer(user_id)
    if user is None:
        return Document.query.filter(false())

    q = Document.query_for_tenant(user.tenant_id)
    if not include_templates:
        q = q.filter(Document.is_template.is_(False))
    if has_org_wide_visibility(user_id):
        return q

    visible_ids = hierarchy_service.get_visible_user_ids(user_id)
    clauses = [
        Document.created_by_id.in_(visible_ids),
        Document.current_approver_id == user_id,
        Document.target_user_id == user_id,
    ]
    if user.organization_unit_id is not None:
        clauses.append(Document.target_department_id == user.organization_unit_id)
    return q.filter(or_(*clauses))


def can_view_template(user_id: int, template: Document) -> bool:
    """Empty allow-list means every department may use the template."""
    user = _viewer(user_id)
    if user is None or template.tenant_id != user.tenant_id:
        return False
    allowed = template.authorized_department_ids or []
    if not allowed or template.created_by_id == user_id:
        return True
    if authorization_service.get_user_tier(user_id) in (RoleTier.ADMIN, RoleTier.EXECUTIVE):
        return True
    return user.organization_unit_id in allowed


def can_view_document(user_id: int, document: Document) -> bool:
    user = _viewer(user_id)
    if user is None or document is None or document.tenant_id != user.tenant_id:
        return False
    if document.is_template:
        return can_view_template(user_id, document)
    if has_org_wide_visibility(user_id):
        return True
    if user_id in (document.created_by_id, document.current_approver_id, document.target_user_id):
        return True
    if (
        document.target_department_id is not None
        and document.target_department_id == user.organization_unit_id
    ):
        return True
    return hierarchy_service.is_subordinate(user_id, document.created_by_id)


# ── Tasks ───────────────────────────────────────────────────────────────────


def visible_tasks_query(user_id: int):
    """Query of tasks *user_id* may list, tenant-scoped."""
    user = _viewer(user_id)
    if user is None:
        return QmsTask.query.filter(false())

    q = QmsTask.query_for_tenant(user.tenant_id)
    if has_org_wide_visibility(user_id):
        return q

    visible_ids = hierarchy_service.get_visible_user_ids(user_id)
    clauses = [
        QmsTask.created_by_id == user_id,
        QmsTask.assigned_to_id.in_(visible_ids),
    ]
    if user.organization_unit_id is not None:
        clauses.append(QmsTask.assigned_to_org_unit_id == user.organization_unit_id)
    return q.filter(or_(*clauses))


def can_view_task(user_id: int, task: QmsTask) -> bool:
    user = _viewer(user_id)
    if user is None or task is None or task.tenant_id != user.tenant_id:
        return False
    if has_org_wide_visibility(user_id):
        return True
    if user_id in (task.created_by_id, task.assigned_to_id):
        return True
    if (
        task.assigned_to_org_unit_id is not None
        and task.assigned_to_org_unit_id == user.organization_unit_id
    ):
        return True
    return (
        task.assigned_to_id is not None
        and hierarchy_service.is_subordinate(user_id, task.assigned_to_id)
    )

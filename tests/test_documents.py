"""
Document workflow tests.

Tests cover:
  - Create / edit / delete rules per role
  - Submit routing: manager fallback, explicit approver, type chain, tender
  - Multi-step approval, rejection back to draft, archive
  - Approval tasks and notifications produced by routing
  - Templates and department allow-lists
  - Optimistic locking on stale versions
"""
from datetime import datetime, timedelta, timezone

import pytest

from qms.core.exceptions import StaleObjectError
from qms.models import db
from qms.models.document import (
    Document,
    DocumentApproval,
    DocumentCategory,
    DocumentType,
    DocumentTypeApprover,
    DocumentVersion,
)
from qms.models.notification import Notification
from qms.models.task import QmsTask
from qms.services import document_service as docs


# ── Fixtures ────────────────────────────────────────────────────────────

def _create(user, title="Cleaning SOP", **data):
    res = docs.create_document(user.id, {"title": title, **data})
    assert res.success, res.message
    return res.value


def _submit(user, doc, **kwargs):
    res = docs.submit_document(user.id, doc.id, **kwargs)
    assert res.success, res.message
    return res.value


@pytest.fixture()
def two_step_type(org):
    """Document type approved by the deputy, then the TMD."""
    doc_type = DocumentType(tenant_id=org.tenant.id, name="Quality Manual", code="QM")
    db.session.add(doc_type)
    db.session.flush()
    db.session.add_all([
        DocumentTypeApprover(tenant_id=org.tenant.id, document_type_id=doc_type.id,
                             approver_id=org.deputy.id, approval_order=1),
        DocumentTypeApprover(tenant_id=org.tenant.id, document_type_id=doc_type.id,
                             approver_id=org.tmd.id, approval_order=2),
    ])
    db.session.commit()
    return doc_type


@pytest.fixture()
def tender_category(org):
    category = DocumentCategory(tenant_id=org.tenant.id, name="Tender Requisitions")
    db.session.add(category)
    db.session.commit()
    return category


def _approval_tasks(doc):
    return QmsTask.query.filter_by(linked_document_id=doc.id).order_by(QmsTask.id).all()


# ═════════════════════════════════════════════════════════════════════════
# CREATE / EDIT / DELETE
# ═════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_staff_creates_draft(self, org):
        doc = _create(org.staff)
        year = datetime.now(timezone.utc).year
        assert doc.status == "draft"
        assert doc.document_number == f"DOC-{year}-0001"
        assert doc.current_version == 1
        assert DocumentVersion.query.filter_by(document_id=doc.id).count() == 1

    def test_numbers_continue_past_deleted_drafts(self, org):
        first = _create(org.staff, "First")
        second = _create(org.staff, "Second")
        docs.delete_document(org.staff.id, first.id)
        third = _create(org.staff, "Third")
        assert second.document_number.endswith("0002")
        assert third.document_number.endswith("0003")

    def test_auditor_cannot_create(self, org):
        res = docs.create_document(org.auditor.id, {"title": "Audit notes"})
        assert res.error_code == "Document.Forbidden"
        assert res.message == "Auditors cannot create documents. This is a read-only role."

    def test_title_required(self, org):
        res = docs.create_document(org.staff.id, {"title": "  "})
        assert res.error_code == "Document.ValidationFailed"
        assert res.http_status == 422

    def test_foreign_reference_rejected(self, org):
        res = docs.create_document(org.staff.id, {"title": "X", "target_department_id": 9999})
        assert res.message == "Target department not found."

    def test_only_executive_or_admin_create_templates(self, org):
        res = docs.create_document(org.mgr.id, {"title": "Template", "is_template": True})
        assert res.message == "Only TMD or System Admin can create document templates."
        assert _create(org.tmd, "Template", is_template=True).is_template


class TestEdit:
    def test_creator_edits_draft(self, org):
        doc = _create(org.staff)
        res = docs.update_document(org.staff.id, doc.id, {"content": "v2"}, change_note="typo")
        assert res.success
        assert res.value.current_version == 2
        assert DocumentVersion.query.filter_by(document_id=doc.id).count() == 2

    def test_department_manager_cannot_edit_others(self, org):
        doc = _create(org.staff)
        res = docs.update_document(org.mgr.id, doc.id, {"content": "x"})
        assert res.message == "Only the creator can edit this document."

    def test_deputy_override(self, org):
        doc = _create(org.staff)
        assert docs.update_document(org.deputy.id, doc.id, {"title": "Renamed"}).success

    def test_approved_is_read_only(self, org):
        doc = _create(org.staff)
        _submit(org.staff, doc)
        docs.approve_document(org.mgr.id, doc.id)
        res = docs.update_document(org.staff.id, doc.id, {"content": "late change"})
        assert res.error_code == "Document.InvalidState"
        assert res.message.startswith("Approved documents are read-only")

    def test_stale_version_raises(self, org):
        doc = _create(org.staff)
        with pytest.raises(StaleObjectError):
            docs.update_document(org.staff.id, doc.id, {"content": "x"}, expected_version=doc.version + 5)

    def test_matching_version_accepted(self, org):
        doc = _create(org.staff)
        res = docs.update_document(org.staff.id, doc.id, {"content": "x"}, expected_version=doc.version)
        assert res.success


class TestDelete:
    def test_creator_deletes_draft(self, org):
        doc = _create(org.staff)
        res = docs.delete_document(org.staff.id, doc.id)
        assert res.success
        assert db.session.get(Document, doc.id) is None

    def test_submitted_cannot_be_deleted(self, org):
        doc = _create(org.staff)
        _submit(org.staff, doc)
        res = docs.delete_document(org.staff.id, doc.id)
        assert res.message == "Only draft documents can be deleted."

    def test_other_user_cannot_delete(self, org):
        doc = _create(org.staff)
        res = docs.delete_document(org.tmd.id, doc.id)
        assert res.error_code == "Document.Forbidden"


# ═════════════════════════════════════════════════════════════════════════
# ROUTING & APPROVAL
# ═════════════════════════════════════════════════════════════════════════

class TestManagerRoute:
    def test_submit_routes_to_manager(self, org):
        doc = _submit(org.staff, _create(org.staff))
        assert doc.status == "submitted"
        assert doc.approval_route == "manager"
        assert doc.current_approver_id == org.mgr.id
        assert doc.approval_step == 1

        (task,) = _approval_tasks(doc)
        assert task.assigned_to_id == org.mgr.id
        assert task.created_by_id == org.staff.id
        assert task.tags == ["approval", "workflow"]
        assert task.priority == "medium"
        assert Notification.query.filter_by(user_id=org.mgr.id, category="approval").count() == 1

    def test_no_manager_falls_back_to_executive(self, org):
        doc = _submit(org.admin, _create(org.admin))
        assert doc.current_approver_id == org.tmd.id

    def test_only_current_approver_decides(self, org):
        doc = _submit(org.staff, _create(org.staff))
        assert docs.can_approve_document(org.mgr.id, doc)
        assert not docs.can_approve_document(org.deputy.id, doc)
        res = docs.approve_document(org.deputy.id, doc.id)
        assert res.message == "Only the current approver can approve this document."
        assert res.http_status == 403

    def test_single_step_approval(self, org):
        doc = _submit(org.staff, _create(org.staff))
        res = docs.approve_document(org.mgr.id, doc.id, comments="Looks good")
        assert res.message == "Document approved."
        doc = res.value
        assert doc.status == "approved"
        assert doc.approved_by_id == org.mgr.id
        assert doc.current_approver_id is None
        assert doc.approval_step == 0
        assert _approval_tasks(doc)[0].status == "completed"
        (approval,) = DocumentApproval.query.filter_by(document_id=doc.id).all()
        assert approval.is_approved is True

    def test_pending_approvals(self, org):
        doc = _submit(org.staff, _create(org.staff))
        assert [d.id for d in docs.get_pending_approvals(org.mgr.id)] == [doc.id]
        assert docs.get_pending_approvals(org.deputy.id) == []

    def test_explicit_approver(self, org):
        doc = _submit(org.staff, _create(org.staff), approver_id=org.deputy.id)
        assert doc.approval_route == "explicit"
        assert doc.current_approver_id == org.deputy.id

    def test_cannot_name_yourself(self, org):
        doc = _create(org.staff)
        res = docs.submit_document(org.staff.id, doc.id, approver_id=org.staff.id)
        assert res.error_code == "Routing.InvalidApprover"

    def test_only_creator_submits(self, org):
        doc = _create(org.staff)
        res = docs.submit_document(org.mgr.id, doc.id)
        assert res.message == "Only the creator can submit this document."

    def test_no_approver_leaves_draft(self):
        from qms.services.user_service import create_tenant, create_user, seed_standard_roles

        lonely = create_tenant("Solo", "solo")
        seed_standard_roles(lonely.id)
        user = create_user(lonely.id, "solo@solo-corp.com", role_names=["Staff"])
        doc = _create(user)
        res = docs.submit_document(user.id, doc.id)
        assert res.error_code == "Routing.NoApprover"
        assert db.session.get(Document, doc.id).status == "draft"
        assert _approval_tasks(doc) == []


class TestTypeChain:
    def test_two_step_chain(self, org, two_step_type):
        doc = _submit(org.staff, _create(org.staff, document_type_id=two_step_type.id))
        assert doc.approval_route == "type_chain"
        assert doc.current_approver_id == org.deputy.id

        res = docs.approve_document(org.deputy.id, doc.id)
        assert res.message == "Approval recorded; forwarded to the next approver."
        doc = res.value
        assert doc.status == "in_review"
        assert doc.current_approver_id == org.tmd.id
        assert doc.approval_step == 2

        first, second = _approval_tasks(doc)
        assert first.status == "completed"
        assert second.assigned_to_id == org.tmd.id
        assert second.priority == "high"

        doc = docs.approve_document(org.tmd.id, doc.id).value
        assert doc.status == "approved"
        steps = [a.step for a in DocumentApproval.query.filter_by(document_id=doc.id)]
        assert sorted(steps) == [1, 2]

    def test_previous_approver_loses_the_document(self, org, two_step_type):
        doc = _submit(org.staff, _create(org.staff, document_type_id=two_step_type.id))
        docs.approve_document(org.deputy.id, doc.id)
        assert docs.approve_document(org.deputy.id, doc.id).error_code == "Document.Forbidden"


class TestTenderRoute:
    def test_finance_then_executive(self, org, tender_category):
        doc = _submit(org.staff, _create(org.staff, "Pump procurement", category_id=tender_category.id))
        assert doc.approval_route == "tender"
        assert doc.current_approver_id == org.finance.id
        (task,) = _approval_tasks(doc)
        assert task.priority == "high"
        assert "tender" in task.tags

        doc = docs.approve_document(org.finance.id, doc.id).value
        assert doc.status == "in_review"
        assert doc.current_approver_id == org.tmd.id

        doc = docs.approve_document(org.tmd.id, doc.id).value
        assert doc.status == "approved"

        impl = QmsTask.query.filter(
            QmsTask.linked_document_id == doc.id, QmsTask.assigned_to_id == org.staff.id,
        ).one()
        assert impl.tags == ["tender", "implementation"]
        due = impl.due_at.replace(tzinfo=timezone.utc)
        assert timedelta(days=13) < due - datetime.now(timezone.utc) <= timedelta(days=14)

    def test_title_phrase_triggers_tender(self, org):
        doc = _submit(org.staff, _create(org.staff, "Tender Requisition for forklifts"))
        assert doc.approval_route == "tender"

    def test_no_finance_user_goes_to_executive(self, org, tender_category):
        from qms.services.user_service import deactivate_user

        deactivate_user(org.admin.id, org.finance.id)
        doc = _submit(org.staff, _create(org.staff, "Pump procurement", category_id=tender_category.id))
        assert doc.approval_route == "tender"
        assert doc.current_approver_id == org.tmd.id

        doc = docs.approve_document(org.tmd.id, doc.id).value
        assert doc.status == "approved"

    def test_no_executive_for_second_step(self, org, tender_category):
        from qms.services.user_service import deactivate_user

        deactivate_user(org.admin.id, org.tmd.id)
        deactivate_user(org.admin.id, org.deputy.id)
        doc = _submit(org.staff, _create(org.staff, "Pump procurement", category_id=tender_category.id))
        assert doc.current_approver_id == org.finance.id

        res = docs.approve_document(org.finance.id, doc.id)
        assert res.error_code == "Routing.NoApprover"
        doc = db.session.get(Document, doc.id)
        assert doc.status == "submitted"
        assert doc.current_approver_id == org.finance.id
        assert doc.approvals.count() == 0


class TestReject:
    def test_reason_required(self, org):
        doc = _submit(org.staff, _create(org.staff))
        res = docs.reject_document(org.mgr.id, doc.id, "  ")
        assert res.message == "A rejection reason is required."

    def test_reject_returns_to_draft(self, org):
        doc = _submit(org.staff, _create(org.staff))
        res = docs.reject_document(org.mgr.id, doc.id, "Missing scope section")
        doc = res.value
        assert doc.status == "draft"
        assert doc.rejection_reason == "Missing scope section"
        assert doc.current_approver_id is None
        assert doc.approval_step == 0
        assert doc.approval_route is None
        (decision,) = DocumentApproval.query.filter_by(document_id=doc.id).all()
        assert decision.is_approved is False

        resubmitted = _submit(org.staff, doc)
        assert resubmitted.status == "submitted"
        assert resubmitted.rejection_reason is None

    def test_draft_cannot_be_rejected(self, org):
        doc = _create(org.staff)
        res = docs.reject_document(org.mgr.id, doc.id, "no")
        assert res.error_code == "Document.InvalidState"


class TestArchive:
    def test_archive_approved(self, org):
        doc = _submit(org.staff, _create(org.staff))
        docs.approve_document(org.mgr.id, doc.id)
        assert docs.can_archive_document(org.deputy.id, doc)
        assert not docs.can_archive_document(org.staff.id, doc)
        assert docs.archive_document(org.staff.id, doc.id).error_code == "Document.Forbidden"
        res = docs.archive_document(org.deputy.id, doc.id, reason="Superseded")
        assert res.value.status == "archived"
        assert res.value.archive_reason == "Superseded"

    def test_only_approved_can_be_archived(self, org):
        doc = _create(org.staff)
        res = docs.archive_document(org.tmd.id, doc.id)
        assert res.message.startswith("Only approved documents can be archived")


# ═════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════

class TestTemplates:
    def test_department_allow_list(self, org):
        template = _create(org.tmd, "QA Checklist", is_template=True, authorized_department_ids=[org.qa.id])

        res = docs.create_from_template(org.staff.id, template.id, {"title": "March checklist"})
        assert res.success
        assert res.value.source_template_id == template.id
        assert res.value.is_template is False
        assert res.value.created_by_id == org.staff.id

        res = docs.create_from_template(org.staff2.id, template.id)
        assert res.message == "Your department is not authorized to use this template."

        assert [t.id for t in docs.list_templates(org.staff.id)] == [template.id]
        assert docs.list_templates(org.staff2.id) == []

    def test_unrestricted_template(self, org):
        template = _create(org.admin, "Generic form", is_template=True)
        assert docs.create_from_template(org.staff2.id, template.id).success

    def test_templates_not_in_document_list(self, org):
        _create(org.tmd, "Form", is_template=True)
        assert docs.list_documents(org.tmd.id) == []

    def test_auditor_cannot_use_template(self, org):
        template = _create(org.tmd, "Form", is_template=True)
        assert docs.create_from_template(org.auditor.id, template.id).error_code == "Document.Forbidden"

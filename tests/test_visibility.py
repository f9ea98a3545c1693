"""
Visibility scoping tests.

Tests cover:
  - Document lists per tier (org-wide readers vs. hierarchy-scoped users)
  - Targeting by department / user, current-approver access
  - Documents with no target department stay private to the creator's line
  - Task lists and detail checks
  - Tenant isolation
"""
from qms.services import document_service as docs
from qms.services import task_service as tasks
from qms.services import visibility_service as vis


def _doc(user, title, **data):
    res = docs.create_document(user.id, {"title": title, **data})
    assert res.success, res.message
    return res.value


def _ids(rows):
    return {r.id for r in rows}


class TestDocumentVisibility:
    def test_hierarchy_scoping(self, org):
        a = _doc(org.staff, "QA work instruction")
        b = _doc(org.staff2, "OPS work instruction")

        assert _ids(docs.list_documents(org.staff.id)) == {a.id}
        assert _ids(docs.list_documents(org.mgr.id)) == {a.id}
        assert _ids(docs.list_documents(org.mgr2.id)) == {b.id}
        assert _ids(docs.list_documents(org.finance.id)) == set()

    def test_org_wide_readers(self, org):
        a = _doc(org.staff, "QA work instruction")
        b = _doc(org.staff2, "OPS work instruction")
        for reader in (org.admin, org.tmd, org.deputy, org.auditor):
            assert _ids(docs.list_documents(reader.id)) == {a.id, b.id}
        assert vis.has_org_wide_visibility(org.auditor.id)
        assert not vis.has_org_wide_visibility(org.mgr.id)

    def test_target_department(self, org):
        targeted = _doc(org.tmd, "OPS shift policy", target_department_id=org.ops.id)
        assert targeted.id in _ids(docs.list_documents(org.staff2.id))
        assert targeted.id not in _ids(docs.list_documents(org.staff.id))
        assert vis.can_view_document(org.mgr2.id, targeted)

    def test_no_target_department_is_not_public(self, org):
        untargeted = _doc(org.tmd, "Board memo")
        assert untargeted.target_department_id is None
        for user in (org.staff, org.staff2, org.mgr, org.finance):
            assert not vis.can_view_document(user.id, untargeted)
            assert untargeted.id not in _ids(docs.list_documents(user.id))

    def test_target_user(self, org):
        personal = _doc(org.tmd, "Personal objectives", target_user_id=org.staff2.id)
        assert _ids(docs.list_documents(org.staff2.id)) == {personal.id}
        assert docs.get_document(org.staff.id, personal.id).error_code == "Document.NotFound"

    def test_current_approver_sees_document(self, org):
        doc = _doc(org.staff2, "Fuel purchase")
        docs.submit_document(org.staff2.id, doc.id, approver_id=org.finance.id)
        assert doc.id in _ids(docs.list_documents(org.finance.id))
        assert docs.get_document(org.finance.id, doc.id).success

    def test_other_tenant_is_invisible(self, org):
        from qms.services.user_service import create_tenant, create_user, seed_standard_roles

        doc = _doc(org.staff, "QA work instruction")
        other = create_tenant("Globex", "globex")
        seed_standard_roles(other.id)
        outsider = create_user(other.id, "tmd@globex-corp.com", role_names=["TMD"])
        assert docs.list_documents(outsider.id) == []
        assert docs.get_document(outsider.id, doc.id).error_code == "Document.NotFound"

    def test_inactive_user_sees_nothing(self, org):
        from qms.models import db

        _doc(org.staff, "QA work instruction")
        org.mgr.is_active = False
        db.session.commit()
        assert docs.list_documents(org.mgr.id) == []


class TestTaskVisibility:
    def test_assignee_line_and_unit(self, org):
        (personal,) = tasks.create_task(org.mgr.id, {"title": "Audit prep", "assigned_to_id": org.staff.id}).value
        (unit,) = tasks.create_task(org.deputy.id, {"title": "Stocktake", "assigned_to_org_unit_id": org.ops.id}).value

        assert _ids(tasks.list_tasks(org.staff.id)) == {personal.id}
        assert _ids(tasks.list_tasks(org.staff2.id)) == {unit.id}
        assert _ids(tasks.list_tasks(org.mgr.id)) == {personal.id}
        assert _ids(tasks.list_tasks(org.mgr2.id)) == {unit.id}
        assert _ids(tasks.list_tasks(org.auditor.id)) == {personal.id, unit.id}

        assert tasks.get_task(org.staff2.id, personal.id).error_code == "Task.NotFound"
        assert vis.can_view_task(org.deputy.id, personal)

    def test_manager_sees_subordinate_assignments(self, org):
        (task,) = tasks.create_task(org.deputy.id, {"title": "Fire drill", "assigned_to_id": org.staff.id}).value
        assert vis.can_view_task(org.mgr.id, task)
        assert not vis.can_view_task(org.mgr2.id, task)

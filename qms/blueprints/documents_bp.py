"""
Documents Blueprint — controlled documents and their approval workflow.

Routes:
  GET    /documents                        – visible documents (hierarchy scoped)
  POST   /documents                        – create draft (or template)
  GET    /documents/templates              – templates the caller may use
  POST   /documents/templates/<tid>/use    – create a draft from a template
  GET    /documents/pending-approvals      – documents waiting on the caller
  GET    /documents/<id>                   – detail
  PUT    /documents/<id>                   – edit draft
  DELETE /documents/<id>                   – delete draft
  POST   /documents/<id>/submit            – submit for approval
  POST   /documents/<id>/approve           – approve current step
  POST   /documents/<id>/reject            – reject with reason
  POST   /documents/<id>/archive           – archive approved document
  GET    /documents/<id>/approval-history  – decisions so far
"""

from flask import Blueprint, jsonify, request

from qms.blueprints import current_user_id, expected_version, json_body, paginate_list
from qms.middleware.permission_required import login_required
from qms.services import document_service
from qms.utils.errors import result_response

documents_bp = Blueprint("documents_bp", __name__, url_prefix="/api/v1/documents")


# ═════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════════

@documents_bp.route("", methods=["GET"])
@login_required
def list_documents():
    docs = document_service.list_documents(current_user_id(), status=request.args.get("status"))
    page, total = paginate_list(docs)
    return jsonify({"items": [d.to_dict() for d in page], "total": total}), 200


@documents_bp.route("/templates", methods=["GET"])
@login_required
def list_templates():
    templates = document_service.list_templates(current_user_id())
    return jsonify({"items": [t.to_dict() for t in templates], "total": len(templates)}), 200


@documents_bp.route("/pending-approvals", methods=["GET"])
@login_required
def pending_approvals():
    docs = document_service.get_pending_approvals(current_user_id())
    return jsonify({"items": [d.to_dict() for d in docs], "total": len(docs)}), 200


@documents_bp.route("/<int:document_id>", methods=["GET"])
@login_required
def get_document(document_id):
    uid = current_user_id()
    res = document_service.get_document(uid, document_id)
    if not res:
        return result_response(res)
    doc = res.value
    return jsonify({
        "success": True,
        "data": doc.to_dict(include_history=True),
        "can": {
            "edit": document_service.can_edit_document(uid, doc),
            "delete": document_service.can_delete_document(uid, doc),
            "approve": document_service.can_approve_document(uid, doc),
            "archive": document_service.can_archive_document(uid, doc),
        },
    }), 200


@documents_bp.route("/<int:document_id>/approval-history", methods=["GET"])
@login_required
def approval_history(document_id):
    return result_response(document_service.get_approval_history(current_user_id(), document_id))


# ═════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═════════════════════════════════════════════════════════════════════════════

@documents_bp.route("", methods=["POST"])
@login_required
def create_document():
    """Body: { title, description?, content?, document_type_id?, category_id?,
    target_department_id?, target_user_id?, is_template?, authorized_department_ids? }
    """
    res = document_service.create_document(current_user_id(), json_body())
    return result_response(res, success_status=201)


@documents_bp.route("/templates/<int:template_id>/use", methods=["POST"])
@login_required
def create_from_template(template_id):
    res = document_service.create_from_template(current_user_id(), template_id, json_body())
    return result_response(res, success_status=201)


@documents_bp.route("/<int:document_id>", methods=["PUT"])
@login_required
def update_document(document_id):
    data = json_body()
    res = document_service.update_document(
        current_user_id(), document_id, data,
        expected_version=expected_version(data), change_note=data.get("change_note"),
    )
    return result_response(res)


@documents_bp.route("/<int:document_id>", methods=["DELETE"])
@login_required
def delete_document(document_id):
    res = document_service.delete_document(
        current_user_id(), document_id, expected_version=expected_version(),
    )
    return result_response(res)


@documents_bp.route("/<int:document_id>/submit", methods=["POST"])
@login_required
def submit_document(document_id):
    """Body: { approver_id?, version? }"""
    data = json_body()
    res = document_service.submit_document(
        current_user_id(), document_id,
        approver_id=data.get("approver_id"), expected_version=expected_version(data),
    )
    return result_response(res)


@documents_bp.route("/<int:document_id>/approve", methods=["POST"])
@login_required
def approve_document(document_id):
    data = json_body()
    res = document_service.approve_document(
        current_user_id(), document_id,
        comments=data.get("comments"), expected_version=expected_version(data),
    )
    return result_response(res)


@documents_bp.route("/<int:document_id>/reject", methods=["POST"])
@login_required
def reject_document(document_id):
    data = json_body()
    res = document_service.reject_document(
        current_user_id(), document_id,
        reason=data.get("reason") or "", expected_version=expected_version(data),
    )
    return result_response(res)


@documents_bp.route("/<int:document_id>/archive", methods=["POST"])
@login_required
def archive_document(document_id):
    data = json_body()
    res = document_service.archive_document(
        current_user_id(), document_id,
        reason=data.get("reason"), expected_version=expected_version(data),
    )
    return result_response(res)

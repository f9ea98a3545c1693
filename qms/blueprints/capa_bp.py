"""
CAPA Blueprint — corrective and preventive actions.

Routes:
  GET    /capas                        – list
  POST   /capas                        – create
  GET    /capas/<id>                   – detail with actions
  PUT    /capas/<id>                   – update
  DELETE /capas/<id>                   – delete (before verification)
  POST   /capas/<id>/advance           – one step forward
  POST   /capas/<id>/verify            – record effectiveness verification
  POST   /capas/<id>/actions           – add an action
  POST   /capa-actions/<aid>/complete  – complete an action
"""

from flask import Blueprint, jsonify, request

from qms.blueprints import current_user_id, expected_version, json_body, paginate_list
from qms.middleware.permission_required import login_required
from qms.services import capa_service
from qms.utils.errors import E, api_error, result_response

capa_bp = Blueprint("capa_bp", __name__, url_prefix="/api/v1")


@capa_bp.route("/capas", methods=["GET"])
@login_required
def list_capas():
    capas = capa_service.list_capas(current_user_id(), status=request.args.get("status"))
    page, total = paginate_list(capas)
    return jsonify({"items": [c.to_dict() for c in page], "total": total}), 200


@capa_bp.route("/capas", methods=["POST"])
@login_required
def create_capa():
    res = capa_service.create_capa(current_user_id(), json_body())
    return result_response(res, success_status=201)


@capa_bp.route("/capas/<int:capa_id>", methods=["GET"])
@login_required
def get_capa(capa_id):
    uid = current_user_id()
    res = capa_service.get_capa(uid, capa_id)
    if not res:
        return result_response(res)
    capa = res.value
    return jsonify({
        "success": True,
        "data": capa.to_dict(include_actions=True),
        "can": {
            "edit": capa_service.can_edit_capa(uid, capa),
            "delete": capa_service.can_delete_capa(uid, capa),
        },
    }), 200


@capa_bp.route("/capas/<int:capa_id>", methods=["PUT"])
@login_required
def update_capa(capa_id):
    data = json_body()
    res = capa_service.update_capa(
        current_user_id(), capa_id, data, expected_version=expected_version(data),
    )
    return result_response(res)


@capa_bp.route("/capas/<int:capa_id>", methods=["DELETE"])
@login_required
def delete_capa(capa_id):
    return result_response(capa_service.delete_capa(current_user_id(), capa_id))


@capa_bp.route("/capas/<int:capa_id>/advance", methods=["POST"])
@login_required
def advance_capa(capa_id):
    data = json_body()
    res = capa_service.advance_capa(
        current_user_id(), capa_id,
        notes=data.get("notes"), expected_version=expected_version(data),
    )
    return result_response(res)


@capa_bp.route("/capas/<int:capa_id>/verify", methods=["POST"])
@login_required
def verify_capa(capa_id):
    """Body: { is_effective: bool, notes?, version? }"""
    data = json_body()
    if not isinstance(data.get("is_effective"), bool):
        return api_error(E.VALIDATION_REQUIRED, "is_effective (boolean) is required")
    res = capa_service.verify_effectiveness(
        current_user_id(), capa_id, data["is_effective"],
        notes=data.get("notes"), expected_version=expected_version(data),
    )
    return result_response(res)


@capa_bp.route("/capas/<int:capa_id>/actions", methods=["POST"])
@login_required
def add_action(capa_id):
    res = capa_service.add_capa_action(current_user_id(), capa_id, json_body())
    return result_response(res, success_status=201)


@capa_bp.route("/capa-actions/<int:action_id>/complete", methods=["POST"])
@login_required
def complete_action(action_id):
    res = capa_service.complete_capa_action(current_user_id(), action_id, json_body().get("notes"))
    return result_response(res)

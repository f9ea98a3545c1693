"""
Delegations Blueprint — temporary permission grants down the reporting line.

Routes:
  POST   /delegations             – delegate a permission to a subordinate
  DELETE /delegations/<id>        – revoke (delegator, or ?force=true with Users.ManageRoles)
  GET    /delegations/mine        – grants I made
  GET    /delegations/received    – grants I hold
"""

from flask import Blueprint, jsonify, request

from qms.blueprints import current_user_id, json_body
from qms.middleware.permission_required import login_required
from qms.services import delegation_service
from qms.utils.errors import E, api_error, result_response

delegations_bp = Blueprint("delegations_bp", __name__, url_prefix="/api/v1/delegations")


@delegations_bp.route("", methods=["POST"])
@login_required
def delegate():
    """Body: { subordinate_id, permission, expires_after_days? }"""
    data = json_body()
    if data.get("subordinate_id") is None or not data.get("permission"):
        return api_error(E.VALIDATION_REQUIRED, "subordinate_id and permission are required")
    res = delegation_service.delegate(
        current_user_id(), data["subordinate_id"], data["permission"],
        expires_after_days=data.get("expires_after_days"),
    )
    return result_response(res, success_status=201)


@delegations_bp.route("/<int:delegation_id>", methods=["DELETE"])
@login_required
def revoke(delegation_id):
    force = request.args.get("force") == "true"
    return result_response(delegation_service.revoke(current_user_id(), delegation_id, force=force))


@delegations_bp.route("/mine", methods=["GET"])
@login_required
def my_delegations():
    rows = delegation_service.get_my_delegations(current_user_id())
    return jsonify({"items": [d.to_dict() for d in rows], "total": len(rows)}), 200


@delegations_bp.route("/received", methods=["GET"])
@login_required
def received_delegations():
    rows = delegation_service.get_received_delegations(current_user_id())
    return jsonify({"items": [d.to_dict() for d in rows], "total": len(rows)}), 200

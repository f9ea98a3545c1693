"""
Users Blueprint — reporting line and role administration.

Routes:
  GET    /users/<id>/permissions        – effective permissions of a visible user
  PUT    /users/<id>/manager            – change manager (cycle-checked)
  POST   /users/<id>/roles              – assign role
  DELETE /users/<id>/roles/<rid>        – remove role
"""

from flask import Blueprint, jsonify

from qms.blueprints import current_user_id, json_body
from qms.middleware.permission_required import (
    require_all_permissions,
    require_any_permission,
    require_permission,
)
from qms.services import authorization_service as authz
from qms.services import user_service
from qms.utils.errors import E, api_error

users_bp = Blueprint("users_bp", __name__, url_prefix="/api/v1/users")


@users_bp.route("/<int:user_id>/permissions", methods=["GET"])
@require_any_permission("Users.View", "Users.ViewAll")
def user_permissions(user_id):
    if not authz.can_view_user_data(current_user_id(), user_id):
        return api_error(E.NOT_FOUND, "User not found")
    return jsonify({
        "user_id": user_id,
        "tier": authz.get_user_tier(user_id).value,
        "permissions": sorted(authz.get_effective_permissions(user_id)),
    }), 200


@users_bp.route("/<int:user_id>/manager", methods=["PUT"])
@require_permission("Users.Edit")
def set_manager(user_id):
    """Body: { manager_id: int | null }"""
    data = json_body()
    if "manager_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "manager_id is required")
    user = user_service.set_manager(current_user_id(), user_id, data["manager_id"])
    return jsonify(user.to_dict()), 200


@users_bp.route("/<int:user_id>/roles", methods=["POST"])
@require_all_permissions("Users.Edit", "Users.ManageRoles")
def assign_role(user_id):
    """Body: { role_id }"""
    data = json_body()
    if data.get("role_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "role_id is required")
    user_service.assign_role(current_user_id(), user_id, data["role_id"])
    return jsonify({"user_id": user_id, "roles": sorted(authz.get_user_roles(user_id))}), 201


@users_bp.route("/<int:user_id>/roles/<int:role_id>", methods=["DELETE"])
@require_all_permissions("Users.Edit", "Users.ManageRoles")
def remove_role(user_id, role_id):
    if not user_service.remove_role(current_user_id(), user_id, role_id):
        return api_error(E.NOT_FOUND, "Role assignment not found")
    return jsonify({"user_id": user_id, "roles": sorted(authz.get_user_roles(user_id))}), 200

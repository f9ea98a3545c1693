"""
Auth Blueprint — JWT authentication endpoints.

  POST /api/v1/auth/login       — Email + password + tenant slug → access token
  GET  /api/v1/auth/me          — Current user, tier and effective permissions
  GET  /api/v1/auth/notifications — Current user's notifications
  POST /api/v1/auth/notifications/read-all — Mark all as read
"""

from flask import Blueprint, current_app, jsonify, request

from qms import limiter
from qms.blueprints import current_user_id
from qms.middleware.permission_required import login_required
from qms.models import db
from qms.models.auth import User
from qms.services import authorization_service as authz
from qms.services import capa_service, task_service
from qms.services.jwt_service import token_response
from qms.services.notification import NotificationService
from qms.services.user_service import authenticate
from qms.utils.errors import E, api_error

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/v1/auth")


def _login_limit():
    return current_app.config.get("LOGIN_RATE_LIMIT", "10 per minute")


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/login", methods=["POST"])
@limiter.limit(_login_limit)
def login():
    """
    Authenticate with email + password.

    Body: { "email": "...", "password": "...", "tenant_slug": "..." }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    tenant_slug = (data.get("tenant_slug") or "").strip()

    if not email or not password or not tenant_slug:
        return api_error(E.VALIDATION_REQUIRED, "Email, password and tenant_slug are required")

    user = authenticate(tenant_slug, email, password)
    if user is None:
        return api_error(E.UNAUTHENTICATED, "Invalid email or password")

    body = token_response(user)
    body["user"] = user.to_dict(include_roles=True)
    return jsonify(body), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/me
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    uid = current_user_id()
    user = db.session.get(User, uid)
    if user is None:
        return api_error(E.NOT_FOUND, "User not found")
    body = user.to_dict(include_roles=True)
    body["tier"] = authz.get_user_tier(uid).value
    body["permissions"] = sorted(authz.get_effective_permissions(uid))
    body["can"] = {
        "create_capa": capa_service.can_create_capa(uid),
        "create_task": task_service.can_create_task(uid),
    }
    return jsonify(body), 200


@auth_bp.route("/notifications", methods=["GET"])
@login_required
def notifications():
    uid = current_user_id()
    unread_only = request.args.get("unread") == "true"
    items, total = NotificationService.list_for_user(uid, unread_only=unread_only)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(uid),
    }), 200


@auth_bp.route("/notifications/read-all", methods=["POST"])
@login_required
def mark_notifications_read():
    count = NotificationService.mark_all_read(current_user_id())
    return jsonify({"marked": count}), 200

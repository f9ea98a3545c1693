"""
Tenant Context Middleware — enforces tenant isolation on API requests.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler

For JWT-authenticated requests the tenant must exist and be active, and the
user must still be an active member of it; ``g.tenant`` and
``g.current_user`` are then available to route handlers.
"""

import logging

from flask import g, jsonify, request

from qms.models import db
from qms.models.auth import Tenant, User

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/health",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.current_user = None

        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith(TENANT_SKIP_PREFIXES):
            return None

        tenant_id = getattr(g, "jwt_tenant_id", None)
        if tenant_id is None:
            return None

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("JWT tenant_id %s not found in DB", tenant_id)
            return jsonify({"error": "Tenant not found"}), 403
        if not tenant.is_active:
            logger.warning("JWT tenant_id %s is deactivated", tenant_id)
            return jsonify({"error": "Tenant account is deactivated"}), 403

        user = db.session.get(User, g.jwt_user_id)
        if user is None or user.tenant_id != tenant.id or not user.is_active:
            logger.warning("JWT user %s is not an active member of tenant %s", g.jwt_user_id, tenant_id)
            return jsonify({"error": "User account is not active"}), 403

        g.tenant = tenant
        g.current_user = user
        return None

    logger.info("Tenant context middleware installed")

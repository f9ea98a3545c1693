"""
JWT Auth Middleware — parses a Bearer token, sets g.jwt_*.

An invalid or expired token leaves the request anonymous; the permission
decorators then answer 401.
"""

import logging

import jwt as pyjwt
from flask import g, request

from qms.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(JWT_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
            return
        except pyjwt.InvalidTokenError:
            logger.warning("Invalid access token on %s", path)
            return

        try:
            g.jwt_user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            logger.warning("Access token without a numeric subject on %s", path)
            return
        g.jwt_tenant_id = payload.get("tenant_id")
        g.jwt_roles = payload.get("roles", [])

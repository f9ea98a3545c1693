"""
Permission Decorators — JWT-aware guards for route protection.

Usage:
    @bp.route("/api/v1/documents", methods=["POST"])
    @require_permission("Documents.Create")
    def create_document():
        ...

    @bp.route("/api/v1/users", methods=["GET"])
    @require_any_permission("Users.View", "Users.ViewAll")
    def list_users():
        ...

Anonymous requests get 401; authenticated users lacking the permission
get 403. The check runs against the effective permission set (role
permissions plus active delegations).
"""

import functools
import logging

from flask import g

from qms.services.authorization_service import (
    has_all_permissions,
    has_any_permission,
    has_permission,
)
from qms.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _unauthenticated():
    return api_error(E.UNAUTHENTICATED, "Authentication required")


def login_required(f):
    """Decorator: require any authenticated JWT user."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "jwt_user_id", None) is None:
            return _unauthenticated()
        return f(*args, **kwargs)
    return decorated


def require_permission(codename: str):
    """Decorator: require the JWT user to hold *codename*."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = getattr(g, "jwt_user_id", None)
            if user_id is None:
                return _unauthenticated()

            if not has_permission(user_id, codename):
                logger.warning(
                    "User %d denied: missing permission '%s' on %s",
                    user_id, codename, f.__name__,
                )
                return api_error(E.FORBIDDEN, "Permission denied", details={"required": codename})

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_permission(*codenames: str):
    """Decorator: require at least ONE of the listed permissions."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = getattr(g, "jwt_user_id", None)
            if user_id is None:
                return _unauthenticated()

            if not has_any_permission(user_id, list(codenames)):
                logger.warning(
                    "User %d denied: missing any of %s on %s",
                    user_id, codenames, f.__name__,
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied", details={"required_any": list(codenames)},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_all_permissions(*codenames: str):
    """Decorator: require ALL of the listed permissions."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = getattr(g, "jwt_user_id", None)
            if user_id is None:
                return _unauthenticated()

            if not has_all_permissions(user_id, list(codenames)):
                logger.warning(
                    "User %d denied: missing all of %s on %s",
                    user_id, codenames, f.__name__,
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied", details={"required_all": list(codenames)},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator

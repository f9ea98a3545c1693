"""
Kasah QMS
Blueprint registry and shared request helpers.
"""

from flask import g, request


def current_user_id():
    """Authenticated user id set by the JWT middleware."""
    return g.jwt_user_id


def json_body():
    return request.get_json(silent=True) or {}


def expected_version(data=None):
    """Optimistic-lock token from the body ``version`` or the If-Match header."""
    data = data if data is not None else json_body()
    raw = data.get("version")
    if raw is None:
        raw = request.headers.get("If-Match", "").strip('"') or None
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def paginate_list(items, default_limit=200, max_limit=1000):
    """Apply limit/offset query params to an already-scoped list.

    Returns:
        (page_items, total_count)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], len(items)

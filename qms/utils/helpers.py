"""Shared utility functions.

get_scoped_or_raise: tenant-scoped primary-key lookup (404 on miss or cross-tenant)
parse_date:          date parsing that returns None on bad input
parse_datetime:      datetime parsing for due dates
commit_or_stale:     commit translating optimistic-lock failures
config_value:        app config lookup with a module default
"""
import logging
from datetime import date, datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from qms.core.exceptions import NotFoundError, StaleObjectError
from qms.models import db

logger = logging.getLogger(__name__)


def get_scoped_or_raise(model, pk, tenant_id, label=None):
    """Fetch ``model`` by primary key within ``tenant_id`` or raise NotFoundError.

    Cross-tenant rows are reported exactly like missing rows.
    """
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None or (tenant_id is not None and obj.tenant_id != tenant_id):
        raise NotFoundError(resource=label, resource_id=pk, tenant_id=tenant_id)
    return obj


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value):
    """Parse an ISO datetime (or bare date) to an aware UTC datetime, else None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except (ValueError, TypeError):
        d = parse_date(value)
        if d is None:
            return None
        parsed = datetime(d.year, d.month, d.day)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def utcnow():
    return datetime.now(timezone.utc)


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_stale(entity):
    """Commit the session; a concurrent version bump becomes StaleObjectError."""
    name, ident = type(entity).__name__, entity.id
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Optimistic lock failed for %s id=%s", name, ident)
        raise StaleObjectError(name, ident) from exc


def config_value(name, default):
    """``current_app.config[name]`` inside an app context, else *default*."""
    from flask import current_app, has_app_context

    if has_app_context():
        return current_app.config.get(name, default)
    return default

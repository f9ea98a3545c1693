"""
Logging setup for the QMS API.

Every record passes through ``RequestContextFilter``, which stamps the
tenant and user of the current request (from ``flask.g``) onto it, so
service code can log plain messages and still get attributable lines.

Output format follows the environment:
  - development / testing: one readable line per record, level colored
  - production: one JSON object per line for the log shipper
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context, has_request_context, request

# Attributes emitted when present on a record; services add the entity ids
# through ``extra={"document_id": ...}``
FIELDS = ("tenant_id", "user_id", "method", "path", "document_id", "capa_id", "task_id", "delegation_id")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"

QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "urllib3", "redis")


class RequestContextFilter(logging.Filter):
    """Attach tenant / user / route of the active request to each record."""

    def filter(self, record):
        if has_request_context():
            record.method = getattr(record, "method", None) or request.method
            record.path = getattr(record, "path", None) or request.path
        if has_app_context():
            for attr, key in (("tenant_id", "jwt_tenant_id"), ("user_id", "jwt_user_id")):
                if getattr(record, attr, None) is None:
                    setattr(record, attr, g.get(key))
        return True


def _context(record):
    return {f: getattr(record, f) for f in FIELDS if getattr(record, f, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "at": f"{record.module}:{record.lineno}",
            **_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record):
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = _LEVEL_COLORS.get(record.levelno, "")
        line = f"{ts} {color}{record.levelname:<7}{_RESET} {record.name}: {record.getMessage()}"
        ctx = _context(record)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    testing = app.config.get("TESTING", False)
    production = not (testing or app.config.get("DEBUG", False))

    default = "INFO" if production else "DEBUG"
    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL") or default).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ConsoleFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # create_app runs once per test session and again in CLI invocations
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, json=%s)", level_name, production)

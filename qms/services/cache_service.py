"""
Per-user authorization cache.

Two entries per user, both sorted JSON lists:
  - ``qms:perms:<user_id>``  effective permission strings
  - ``qms:roles:<user_id>``  role names

Backend is Redis when QMS_CACHE_URL (or REDIS_URL) names a reachable
server, so invalidation reaches every worker. Otherwise an in-process
dict is used and other workers may serve a stale set for up to one TTL.

Reads are get-or-compute; two first requests racing on a cold key both
compute and the last write wins, which is harmless because the value is
a pure function of the database.
"""

import json
import logging
import os
import threading
import time

logger = logging.getLogger(__name__)

KEY_PREFIX = "qms:"
DEFAULT_TTL = 300


class _MemoryBackend:
    """The subset of the redis-py client API this module uses."""

    def __init__(self):
        self._data = {}  # key → (payload, expires_at)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            payload, expires_at = self._data.get(key, (None, 0))
            if payload is not None and time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return payload

    def setex(self, key, ttl, payload):
        with self._lock:
            self._data[key] = (payload, time.monotonic() + ttl)

    def delete(self, *keys):
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def scan_iter(self, match):
        prefix = match.rstrip("*")
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def ping(self):
        return True


_backend = None


def _get_backend():
    global _backend
    if _backend is None:
        _backend = _connect(os.getenv("QMS_CACHE_URL") or os.getenv("REDIS_URL"))
    return _backend


def _connect(url):
    if not url or url.startswith("memory://"):
        return _MemoryBackend()
    import redis

    client = redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis at %s unreachable (%s); using in-process cache", url.split("@")[-1], exc)
        return _MemoryBackend()
    logger.info("Authorization cache on Redis at %s", url.split("@")[-1])
    return client


def reset_backend():
    """Drop the chosen backend so the next call re-reads the environment."""
    global _backend
    _backend = None


def backend_name():
    return "memory" if isinstance(_get_backend(), _MemoryBackend) else "redis"


def _ttl():
    from flask import current_app, has_app_context

    if has_app_context():
        return int(current_app.config.get("PERMISSION_CACHE_TTL", DEFAULT_TTL))
    return DEFAULT_TTL


def permissions_key(user_id):
    return f"{KEY_PREFIX}perms:{user_id}"


def roles_key(user_id):
    return f"{KEY_PREFIX}roles:{user_id}"


def _get_or_compute(key, loader):
    backend = _get_backend()
    raw = backend.get(key)
    if raw is not None:
        return set(json.loads(raw))
    value = set(loader())
    backend.setex(key, _ttl(), json.dumps(sorted(value)))
    return value


def get_cached_permissions(user_id, loader):
    """Effective permissions for *user_id*; *loader* runs on a miss."""
    return _get_or_compute(permissions_key(user_id), loader)


def get_cached_roles(user_id, loader):
    return _get_or_compute(roles_key(user_id), loader)


def invalidate_user_cache(user_id):
    _get_backend().delete(permissions_key(user_id), roles_key(user_id))


def clear_all():
    """Remove every authorization entry (role permission edits, tests)."""
    backend = _get_backend()
    keys = list(backend.scan_iter(match=f"{KEY_PREFIX}*"))
    if keys:
        backend.delete(*keys)

"""
Cache Service — TTL cache for resolved authorization data.

Holds:
  - per-user permission / capability / role sets (``AUTHZ_CACHE_TTL``, 5 min)
  - the active workflow transition table (``WORKFLOW_CACHE_TTL``, 1 min)

Uses Redis when ``REDIS_URL`` is set, otherwise an in-process dict.
Values are stored as JSON so both backends behave the same.
"""

import json
import logging
import os
import threading
import time

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)
_memory_lock = threading.Lock()


class _MemoryBackend:
    """Dict cache for dev/testing and single-process deployments."""

    def get(self, key):
        with _memory_lock:
            entry = _memory_store.get(key)
            if entry is None:
                return None
            val, expires = entry
            if expires and time.time() > expires:
                _memory_store.pop(key, None)
                return None
            return val

    def setex(self, key, ttl_seconds, value):
        with _memory_lock:
            _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        with _memory_lock:
            for k in keys:
                _memory_store.pop(k, None)

    def keys(self, pattern):
        """Glob matching for 'prefix*' patterns only."""
        with _memory_lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in _memory_store if k.startswith(prefix)]
            return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        with _memory_lock:
            _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _redis_url():
    if has_app_context():
        url = current_app.config.get("REDIS_URL")
        if url:
            return url
    return os.getenv("REDIS_URL")


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = _redis_url()
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            _backend = _redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


# ── Default TTLs ─────────────────────────────────────────────────────────

AUTHZ_TTL = 300     # 5 minutes
WORKFLOW_TTL = 60   # 1 minute


def authz_ttl() -> int:
    if has_app_context():
        return int(current_app.config.get("AUTHZ_CACHE_TTL", AUTHZ_TTL))
    return AUTHZ_TTL


def workflow_ttl() -> int:
    if has_app_context():
        return int(current_app.config.get("WORKFLOW_CACHE_TTL", WORKFLOW_TTL))
    return WORKFLOW_TTL


# ── Key builders ─────────────────────────────────────────────────────────

AUTHZ_PREFIX = "authz:"
WORKFLOW_TRANSITIONS_KEY = "workflow:transitions"


def user_key(kind, user_id):
    return f"{AUTHZ_PREFIX}{kind}:{user_id}"


# ── Public API ───────────────────────────────────────────────────────────

def get_cached(key, ttl=AUTHZ_TTL, loader=None):
    """Cache-aside.  If *loader* is provided, it's called on miss and the
    result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            pass
    if loader is None:
        return None
    value = loader()
    if value is not None:
        be.setex(key, ttl, json.dumps(value))
    return value


def delete_cached(*keys):
    if keys:
        _get_backend().delete(*keys)


def delete_prefix(prefix):
    be = _get_backend()
    keys = be.keys(f"{prefix}*")
    if keys:
        be.delete(*keys)
    return len(keys or [])


def clear_all():
    """Flush the whole cache (mainly for tests)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except Exception as exc:
        return {"status": "error", "detail": str(exc)}

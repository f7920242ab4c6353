"""
Session Service — signed session tokens carrying an authorization snapshot.

Algorithm: HS256 (PyJWT).

Token payload:
{
    "sub": "<user_id>",
    "roles": ["manager", ...],
    "level": 60,
    "superuser": false,
    "permissions": ["documents.read", ...],
    "capabilities": ["DASHBOARD_VIEW", ...],
    "authz_at": <unix ts the snapshot was resolved>,
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}

Authorization propagation delay
-------------------------------
Requests are authorized from the snapshot inside the token, not from the
database.  The snapshot is re-resolved only once it is at least
``SESSION_REFRESH_SECONDS`` old (default 60).  A role or grant change
therefore reaches an already-issued session within that window, never
instantly.  Credential verification happens upstream of this service.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from docguard.core.exceptions import UnauthenticatedError
from docguard.models import db
from docguard.models.auth import User
from docguard.services import permission_service
from docguard.services.authz_vocabulary import parse_token

logger = logging.getLogger(__name__)

# ─── Defaults ────────────────────────────────────────────────
DEFAULT_REFRESH_SECONDS = 60
DEFAULT_MAX_AGE = 604800   # 7 days
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_refresh_seconds() -> int:
    return int(current_app.config.get("SESSION_REFRESH_SECONDS", DEFAULT_REFRESH_SECONDS))


def _get_max_age() -> int:
    return int(current_app.config.get("SESSION_MAX_AGE", DEFAULT_MAX_AGE))


# ═══════════════════════════════════════════════════════════════
# Principal
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class SessionPrincipal:
    """Request-scoped identity answered entirely from the token snapshot."""

    user_id: int
    roles: tuple[str, ...] = ()
    level: int = 0
    superuser: bool = False
    permissions: frozenset[str] = field(default_factory=frozenset)
    capabilities: frozenset[str] = field(default_factory=frozenset)
    authz_at: float = 0.0

    @classmethod
    def from_payload(cls, payload: dict) -> "SessionPrincipal":
        return cls(
            user_id=int(payload["sub"]),
            roles=tuple(payload.get("roles", [])),
            level=int(payload.get("level", 0)),
            superuser=bool(payload.get("superuser", False)),
            permissions=frozenset(payload.get("permissions", [])),
            capabilities=frozenset(payload.get("capabilities", [])),
            authz_at=float(payload.get("authz_at", 0)),
        )

    def has_capability(self, name: str) -> bool:
        return self.superuser or name in self.capabilities

    def has_any_capability(self, names) -> bool:
        return self.superuser or bool(self.capabilities & set(names))

    def has_permission(self, name: str) -> bool:
        return self.superuser or name in self.permissions

    def has_token(self, raw: str) -> bool:
        if parse_token(raw) is None:
            return False
        return self.superuser or raw in self.permissions or raw in self.capabilities


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def _active_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthenticatedError("User is inactive or unknown")
    return user


def _build_payload(user_id: int, now: float) -> dict:
    issued = datetime.fromtimestamp(now, tz=timezone.utc)
    return {
        **_snapshot_claims(user_id, now),
        "iat": issued,
        "exp": issued + timedelta(seconds=_get_max_age()),
        "jti": str(uuid.uuid4()),
    }


def _snapshot_claims(user_id: int, now: float) -> dict:
    snapshot = permission_service.resolve_authorization_snapshot(user_id)
    return {
        "sub": str(user_id),
        "roles": snapshot["roles"],
        "level": snapshot["level"],
        "superuser": snapshot["superuser"],
        "permissions": snapshot["permissions"],
        "capabilities": snapshot["capabilities"],
        "authz_at": now,
    }


def _encode(payload: dict) -> str:
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def issue_session_token(user_id: int, now: float | None = None) -> str:
    """Resolve the user's authorization and sign it into a new token."""
    now = time.time() if now is None else now
    _active_user(user_id)
    token = _encode(_build_payload(user_id, now))
    logger.info("Session issued", extra={"user_id": user_id, "event_type": "session_issued"})
    return token


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_session_token(token: str) -> dict:
    """Verify signature and expiry.  Raises ``UnauthenticatedError``."""
    try:
        return jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Session expired")
    except jwt.InvalidTokenError:
        raise UnauthenticatedError("Invalid session token")


def refresh_if_stale(payload: dict, now: float | None = None) -> tuple[dict, str | None]:
    """
    Re-resolve the snapshot once it is ``SESSION_REFRESH_SECONDS`` old.

    Returns ``(payload, None)`` while the snapshot is fresh, otherwise
    ``(new_payload, new_token)``.  Only the snapshot claims and ``authz_at``
    change; ``exp`` stays that of the original token.  The user's engine
    cache entry is dropped first so the refresh reads current grants.
    """
    now = time.time() if now is None else now
    age = now - float(payload.get("authz_at", 0))
    if age < _get_refresh_seconds():
        return payload, None

    user_id = int(payload["sub"])
    permission_service.invalidate_cache(user_id)
    _active_user(user_id)
    # iat, exp and jti carry over.
    new_payload = {**payload, **_snapshot_claims(user_id, now)}
    logger.debug(
        "Session snapshot refreshed after %.0fs", age,
        extra={"user_id": user_id, "event_type": "session_refreshed"},
    )
    return new_payload, _encode(new_payload)

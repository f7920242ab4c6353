"""
Authorization vocabulary — the names the engine reasons about.

Two vocabularies are live at the same time:

  * legacy permissions, ``module.action`` (``documents.update``, ``pdf.download``)
  * capabilities, ``CATEGORY_ACTION`` (``DOCUMENT_EDIT``, ``DOCUMENT_DOWNLOAD``)

Workflow transitions and some call sites store requirement strings from
either vocabulary, so every raw requirement is classified with
``parse_token`` before it is checked.  ``PERMISSION_CAPABILITY_MAP`` is the
single, inspectable bridge between the two.

Role identity rules also live here:

  * ``canonical_role_name`` folds the ``org_`` naming era into the plain one.
  * ``is_superuser_role`` is the only place the admin bypass is decided.

This module must not import models at import time (models import it).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Token types
# ═════════════════════════════════════════════════════════════════════════════

_LEGACY_RE = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_.]*$")
_CAPABILITY_RE = re.compile(r"^[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+$")


@dataclass(frozen=True)
class LegacyPermission:
    """A granular ``module.action`` permission name."""
    name: str

    @property
    def module(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def action(self) -> str:
        return self.name.split(".", 1)[1]


@dataclass(frozen=True)
class CapabilityToken:
    """A coarse ``CATEGORY_ACTION`` capability name."""
    name: str

    @property
    def category(self) -> str:
        return self.name.split("_", 1)[0].lower()


AuthorizationToken = LegacyPermission | CapabilityToken


def parse_token(raw: str | None) -> AuthorizationToken | None:
    """Classify a raw requirement string.

    Returns ``None`` for anything that fits neither vocabulary (empty,
    mixed case, stray whitespace).  Callers treat ``None`` as a
    configuration error, never as "no requirement".
    """
    if not raw:
        return None
    if _LEGACY_RE.match(raw):
        return LegacyPermission(raw)
    if _CAPABILITY_RE.match(raw):
        return CapabilityToken(raw)
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Vocabulary bridge
# ═════════════════════════════════════════════════════════════════════════════

PERMISSION_CAPABILITY_MAP: dict[str, str] = {
    "documents.read": "DOCUMENT_VIEW",
    "documents.create": "DOCUMENT_CREATE",
    "documents.update": "DOCUMENT_EDIT",
    "documents.delete": "DOCUMENT_DELETE",
    "documents.approve": "DOCUMENT_APPROVE",
    "documents.publish": "DOCUMENT_PUBLISH",
    "pdf.download": "DOCUMENT_DOWNLOAD",
    "pdf.print": "DOCUMENT_PRINT",
    "pdf.copy": "DOCUMENT_COPY",
    "users.read": "USER_VIEW",
    "users.update": "USER_MANAGE",
    "roles.update": "ROLE_MANAGE",
    "audit.read": "AUDIT_VIEW",
    "workflow.update": "WORKFLOW_MANAGE",
}

CAPABILITY_PERMISSION_MAP: dict[str, str] = {
    cap: perm for perm, cap in PERMISSION_CAPABILITY_MAP.items()
}


def equivalent_names(raw: str) -> set[str]:
    """The raw name plus its counterpart in the other vocabulary, if mapped."""
    names = {raw}
    if raw in PERMISSION_CAPABILITY_MAP:
        names.add(PERMISSION_CAPABILITY_MAP[raw])
    if raw in CAPABILITY_PERMISSION_MAP:
        names.add(CAPABILITY_PERMISSION_MAP[raw])
    return names


# ═════════════════════════════════════════════════════════════════════════════
# Role identity
# ═════════════════════════════════════════════════════════════════════════════

ORG_ROLE_PREFIX = "org_"

SUPERUSER_ROLE_NAMES = frozenset({"admin", "administrator", "org_administrator"})


def canonical_role_name(name: str | None) -> str:
    """``"ORG_Manager "`` → ``"manager"``.  Both naming eras compare equal."""
    if not name:
        return ""
    norm = name.strip().lower()
    if norm.startswith(ORG_ROLE_PREFIX):
        norm = norm[len(ORG_ROLE_PREFIX):]
    return norm


def role_names_match(left: str | None, right: str | None) -> bool:
    return bool(left) and canonical_role_name(left) == canonical_role_name(right)


def is_superuser_role(name: str | None) -> bool:
    if not name:
        return False
    return name.strip().lower() in SUPERUSER_ROLE_NAMES


# ═════════════════════════════════════════════════════════════════════════════
# Startup consistency check
# ═════════════════════════════════════════════════════════════════════════════

def check_vocabulary_consistency() -> dict:
    """Cross-check stored requirement strings against the known vocabularies.

    Returns a report with one list per problem class.  ``ok`` is True when
    every list is empty.  Requires an application context.
    """
    from docguard.models import db
    from docguard.models.auth import Capability, Permission
    from docguard.models.document import WorkflowTransition
    from docguard.models.resource import Resource

    permission_names = {
        r[0] for r in db.session.query(Permission.name).filter_by(is_active=True).all()
    }
    capability_names = {r[0] for r in db.session.query(Capability.name).all()}

    missing_permissions = sorted(
        p for p in PERMISSION_CAPABILITY_MAP if p not in permission_names
    )
    missing_capabilities = sorted(
        c for c in PERMISSION_CAPABILITY_MAP.values() if c not in capability_names
    )

    unknown_transition_requirements = []
    for t in WorkflowTransition.query.filter_by(is_active=True).all():
        req = t.required_permission
        if not req:
            continue
        token = parse_token(req)
        known = (
            (isinstance(token, LegacyPermission) and req in permission_names)
            or (isinstance(token, CapabilityToken) and req in capability_names)
        )
        if not known:
            unknown_transition_requirements.append({
                "transition_id": t.id,
                "from_status": t.from_status,
                "to_status": t.to_status,
                "required_permission": req,
            })

    unknown_resource_capabilities = [
        {"resource_id": r.id, "path": r.path, "required_capability": r.required_capability}
        for r in Resource.query.filter(Resource.required_capability.isnot(None)).all()
        if r.required_capability not in capability_names
    ]

    report = {
        "missing_permissions": missing_permissions,
        "missing_capabilities": missing_capabilities,
        "unknown_transition_requirements": unknown_transition_requirements,
        "unknown_resource_capabilities": unknown_resource_capabilities,
    }
    report["ok"] = not any(report.values())
    return report


def log_vocabulary_report(report: dict) -> None:
    if report.get("ok"):
        logger.info("Authorization vocabulary consistent")
        return
    for key in (
        "missing_permissions",
        "missing_capabilities",
        "unknown_transition_requirements",
        "unknown_resource_capabilities",
    ):
        for entry in report.get(key, []):
            logger.warning(
                "Authorization config drift: %s %s", key, entry,
                extra={"event_type": "authz_config"},
            )

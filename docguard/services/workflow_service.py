"""
Workflow Service — document status state machine.

Each edge (``WorkflowTransition``) declares a minimum role level, one
requirement string (a legacy permission *or* a capability name) and an
optional list of role names.  A user may take an edge when all of:

    1. max active role level >= edge.min_level           (else ``role_level``)
    2. holds one of edge.required_roles, if any           (else ``missing_role``)
    3. edge.required_permission names a known permission
       or capability                                     (else ``unknown_requirement``)
    4. holds that permission or capability               (else ``missing_permission``)

Superuser roles bypass checks 1, 2 and 4.  Check 3 fails closed for
everyone: a misconfigured edge is never silently granted.

Role names are compared with ``role_names_match`` so ``org_kadiv`` and
``kadiv`` are the same identity here (and only here).

Applying a transition re-validates server side, then commits with a
compare-and-swap on (status, version).  A lost race or a stale source
status raises ``StaleTransitionError``, never a silent overwrite.

Usage:
    from docguard.services.workflow_service import apply_transition

    result = apply_transition(user, document_id=7, to_status="IN_REVIEW",
                              reason="ready", expected_from_status="DRAFT")
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from docguard.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StaleTransitionError,
    UnauthenticatedError,
    ValidationError,
)
from docguard.models import db
from docguard.models.audit import write_audit
from docguard.models.document import (
    DOCUMENT_STATUSES,
    Document,
    DocumentStatus,
    WorkflowTransition,
)
from docguard.services import cache_service, document_history, permission_service
from docguard.services.authz_vocabulary import (
    is_superuser_role,
    parse_token,
    role_names_match,
)
from docguard.utils.helpers import parse_bool_field, parse_int_field

logger = logging.getLogger(__name__)

S = DocumentStatus

# ── Fallback table (used only when the transitions table is unreadable) ─────

_ARCHIVE = {
    "to_status": S.ARCHIVED,
    "min_level": 100,
    "required_permission": "documents.delete",
    "description": "Archive document",
    "allowed_by": ["Administrator"],
}

DEFAULT_TRANSITIONS: list[dict] = [
    {"from_status": S.DRAFT, "to_status": S.IN_REVIEW, "min_level": 50,
     "required_permission": "documents.update",
     "description": "Submit document for review",
     "allowed_by": ["Editor", "Manager", "Administrator"]},
    {"from_status": S.IN_REVIEW, "to_status": S.PENDING_APPROVAL, "min_level": 70,
     "required_permission": "documents.update",
     "description": "Review completed, forward for approval",
     "allowed_by": ["Manager", "Administrator"]},
    {"from_status": S.IN_REVIEW, "to_status": S.DRAFT, "min_level": 70,
     "required_permission": "documents.update",
     "description": "Send back for revision",
     "allowed_by": ["Manager", "Administrator"]},
    {"from_status": S.PENDING_APPROVAL, "to_status": S.APPROVED, "min_level": 70,
     "required_permission": "documents.approve",
     "description": "Approve document",
     "allowed_by": ["Manager", "Administrator"]},
    {"from_status": S.PENDING_APPROVAL, "to_status": S.REJECTED, "min_level": 70,
     "required_permission": "documents.approve",
     "description": "Reject document",
     "allowed_by": ["Manager", "Administrator"]},
    {"from_status": S.APPROVED, "to_status": S.PUBLISHED, "min_level": 100,
     "required_permission": "documents.publish",
     "description": "Publish approved document",
     "allowed_by": ["Administrator"]},
    {"from_status": S.REJECTED, "to_status": S.DRAFT, "min_level": 50,
     "required_permission": "documents.update",
     "description": "Return to draft for revision after rejection",
     "allowed_by": ["Editor", "Manager", "Administrator"]},
    {"from_status": S.PUBLISHED, "to_status": S.IN_REVIEW, "min_level": 90,
     "required_permission": "DOCUMENT_EDIT",
     "description": "Start document revision (new version)",
     "allowed_by": ["PPD", "Administrator"]},
    {"from_status": S.ARCHIVED, "to_status": S.DRAFT, "min_level": 100,
     "required_permission": "DOCUMENT_EDIT",
     "description": "Unarchive document to draft",
     "allowed_by": ["Administrator"]},
] + [
    {"from_status": src, **_ARCHIVE}
    for src in (S.DRAFT, S.IN_REVIEW, S.PENDING_APPROVAL, S.APPROVED, S.PUBLISHED, S.REJECTED)
]


# ═════════════════════════════════════════════════════════════════════════════
# Result types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    reason: str | None = None
    required: str | None = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


@dataclass
class TransitionResult:
    document: Document
    from_status: str
    to_status: str
    history_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "document": self.document.to_dict(),
            "from_status": self.from_status,
            "to_status": self.to_status,
            "history_id": self.history_id,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Transition table (cached)
# ═════════════════════════════════════════════════════════════════════════════

def _defaults() -> list[dict]:
    return [
        {"id": None, "required_roles": [], "sort_order": i, "is_active": True, **t}
        for i, t in enumerate(DEFAULT_TRANSITIONS)
    ]


def _load_transitions() -> list[dict]:
    rows = (
        WorkflowTransition.query.filter_by(is_active=True)
        .order_by(WorkflowTransition.sort_order, WorkflowTransition.id)
        .all()
    )
    return [t.to_dict() for t in rows]


def get_active_transitions() -> list[dict]:
    try:
        return cache_service.get_cached(
            cache_service.WORKFLOW_TRANSITIONS_KEY,
            ttl=cache_service.workflow_ttl(),
            loader=_load_transitions,
        ) or []
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Workflow transitions unreadable (%s), using defaults", exc)
        return _defaults()


def clear_workflow_cache() -> None:
    cache_service.delete_cached(cache_service.WORKFLOW_TRANSITIONS_KEY)


def _as_dict(transition) -> dict:
    if isinstance(transition, WorkflowTransition):
        return transition.to_dict()
    return transition


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

def user_has_required_role(role_names, required_roles) -> bool:
    """True when any held role equals any required role after ``org_`` folding."""
    return any(role_names_match(held, req) for held in role_names for req in required_roles)


def evaluate_transition(user_id: int, transition) -> TransitionCheck:
    t = _as_dict(transition)
    role_names = permission_service.get_user_role_names(user_id)
    superuser = any(is_superuser_role(r) for r in role_names)

    min_level = t.get("min_level") or 0
    if not superuser and permission_service.get_user_max_level(user_id) < min_level:
        return TransitionCheck(False, "role_level", f"level>={min_level}")

    required_roles = t.get("required_roles") or []
    if required_roles and not superuser and not user_has_required_role(role_names, required_roles):
        return TransitionCheck(False, "missing_role", ",".join(required_roles))

    req = t.get("required_permission")
    if req:
        if parse_token(req) is None or not permission_service.is_known_token(req):
            logger.warning(
                "Transition %s->%s has unknown requirement %r",
                t.get("from_status"), t.get("to_status"), req,
                extra={"event_type": "authz_config", "user_id": user_id},
            )
            return TransitionCheck(False, "unknown_requirement", req)
        if not permission_service.has_token(user_id, req):
            return TransitionCheck(False, "missing_permission", req)

    return TransitionCheck(True)


def get_allowed_transitions(user, document) -> list[dict]:
    if user is None or not user.is_active:
        return []
    out = []
    for t in get_active_transitions():
        if t["from_status"] != document.status:
            continue
        if evaluate_transition(user.id, t).allowed:
            out.append({
                "to_status": t["to_status"],
                "description": t.get("description"),
                "allowed_by": t.get("allowed_by", []),
            })
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Apply
# ═════════════════════════════════════════════════════════════════════════════

def compare_and_swap_status(
    document_id: int,
    from_status: str,
    version: int,
    to_status: str,
    **values,
) -> bool:
    """Conditional UPDATE; True only if the row still had (status, version)."""
    result = db.session.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.status == from_status,
            Document.version == version,
        )
        .values(status=to_status, version=version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _find_edge(from_status: str, to_status: str) -> dict | None:
    for t in get_active_transitions():
        if t["from_status"] == from_status and t["to_status"] == to_status:
            return t
    return None


def _sources_for(to_status: str) -> list[str]:
    return sorted({t["from_status"] for t in get_active_transitions() if t["to_status"] == to_status})


def apply_transition(
    user,
    document_id: int,
    to_status: str,
    reason: str = None,
    expected_from_status: str = None,
) -> TransitionResult:
    """
    Move a document to *to_status*.

    Raises:
        UnauthenticatedError: no active user.
        NotFoundError: unknown document.
        StaleTransitionError: *expected_from_status* differs from the stored
            status, the edge only exists from another status, or another
            writer committed first.
        ValidationError: no such edge anywhere.
        ForbiddenError: the user fails the edge's checks; ``reason`` says which.
    """
    if user is None or not user.is_active:
        raise UnauthenticatedError()
    doc = db.session.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document", document_id)

    current, version = doc.status, doc.version
    if expected_from_status is not None and expected_from_status != current:
        raise StaleTransitionError(document_id, expected_from_status, current)

    edge = _find_edge(current, to_status)
    if edge is None:
        sources = _sources_for(to_status)
        if sources:
            raise StaleTransitionError(document_id, ",".join(sources), current)
        raise ValidationError(
            f"No transition from {current} to {to_status}",
            details={"from_status": current, "to_status": to_status},
        )

    check = evaluate_transition(user.id, edge)
    if not check.allowed:
        logger.warning(
            "Transition %s->%s on document %s denied: %s (%s)",
            current, to_status, document_id, check.reason, check.required,
            extra={"user_id": user.id, "decision": "deny", "reason": check.reason},
        )
        raise ForbiddenError(required=check.required, reason=check.reason)

    now = datetime.now(timezone.utc)
    stamps = {"updated_by_id": user.id, "updated_at": now}
    if to_status == S.APPROVED:
        stamps.update(approved_by_id=user.id, approved_at=now)
    elif to_status == S.PUBLISHED:
        stamps["published_at"] = now

    if not compare_and_swap_status(document_id, current, version, to_status, **stamps):
        db.session.rollback()
        actual = db.session.get(Document, document_id, populate_existing=True)
        raise StaleTransitionError(document_id, current, actual.status if actual else None)

    entry = document_history.track_status_change(
        document_id, user.id, current, to_status, reason,
        metadata={"version": version + 1},
    )
    db.session.commit()
    db.session.refresh(doc)
    logger.info(
        "Document %s: %s -> %s", document_id, current, to_status,
        extra={"user_id": user.id, "event_type": "document_transition"},
    )
    return TransitionResult(doc, current, to_status, entry.id)


# ═════════════════════════════════════════════════════════════════════════════
# Legacy status migration
# ═════════════════════════════════════════════════════════════════════════════

def migrate_pending_review_to_in_review(actor_user_id: int = None) -> dict:
    """Rename PENDING_REVIEW to IN_REVIEW in documents and transitions."""
    old, new = S.PENDING_REVIEW, S.IN_REVIEW
    counts = {"documents": 0, "transitions_renamed": 0, "transitions_dropped": 0}

    docs = Document.query.filter_by(status=old).all()
    for doc in docs:
        doc.status = new
        doc.version = (doc.version or 0) + 1
        document_history.add_document_history(
            document_id=doc.id,
            action="migrated",
            field_changed="status",
            status_from=old,
            status_to=new,
            changed_by_id=actor_user_id,
            change_reason=f"Status {old} renamed to {new}",
        )
        counts["documents"] += 1

    legacy = WorkflowTransition.query.filter(
        (WorkflowTransition.from_status == old) | (WorkflowTransition.to_status == old)
    ).all()
    for t in legacy:
        src = new if t.from_status == old else t.from_status
        dst = new if t.to_status == old else t.to_status
        clash = WorkflowTransition.query.filter(
            WorkflowTransition.from_status == src,
            WorkflowTransition.to_status == dst,
            WorkflowTransition.id != t.id,
        ).first()
        if clash or src == dst:
            db.session.delete(t)
            counts["transitions_dropped"] += 1
        else:
            t.from_status, t.to_status = src, dst
            counts["transitions_renamed"] += 1
        db.session.flush()

    write_audit(entity_type="workflow_transition", entity_id="*",
                action="workflow.migrate_status", actor_user_id=actor_user_id, diff=counts)
    db.session.commit()
    clear_workflow_cache()
    logger.info("Migrated %s to %s: %s", old, new, counts)
    return counts


# ═════════════════════════════════════════════════════════════════════════════
# Transition administration
# ═════════════════════════════════════════════════════════════════════════════

def _join(values) -> str | None:
    if not values:
        return None
    if isinstance(values, str):
        return values
    return ", ".join(v.strip() for v in values if v and v.strip())


def _validate_edge(from_status, to_status, required_permission):
    for key, status in (("from_status", from_status), ("to_status", to_status)):
        if status not in DOCUMENT_STATUSES:
            raise ValidationError(f"Unknown status {status!r}", details={key: status})
    if from_status == to_status:
        raise ValidationError("A transition must change the status",
                              details={"to_status": to_status})
    if required_permission and parse_token(required_permission) is None:
        raise ValidationError(
            "required_permission must be a module.action permission or a CATEGORY_ACTION capability",
            details={"required_permission": required_permission},
        )
    if required_permission and not permission_service.is_known_token(required_permission):
        logger.warning(
            "Transition %s->%s references unknown requirement %r",
            from_status, to_status, required_permission,
            extra={"event_type": "authz_config"},
        )


def create_transition(
    from_status: str,
    to_status: str,
    min_level: int = 0,
    required_permission: str = None,
    description: str = None,
    required_roles=None,
    allowed_by=None,
    sort_order: int = 0,
) -> WorkflowTransition:
    _validate_edge(from_status, to_status, required_permission)
    min_level = parse_int_field(0 if min_level is None else min_level, "min_level", minimum=0)
    sort_order = parse_int_field(0 if sort_order is None else sort_order, "sort_order")
    if WorkflowTransition.query.filter_by(from_status=from_status, to_status=to_status).first():
        raise ConflictError("WorkflowTransition", "edge", f"{from_status}->{to_status}")

    t = WorkflowTransition(
        from_status=from_status,
        to_status=to_status,
        min_level=min_level,
        required_permission=required_permission,
        required_roles=_join(required_roles),
        description=description,
        allowed_by_label=_join(allowed_by),
        sort_order=sort_order,
    )
    db.session.add(t)
    db.session.flush()
    write_audit(entity_type="workflow_transition", entity_id=t.id,
                action="workflow.create", diff=t.to_dict())
    db.session.commit()
    clear_workflow_cache()
    return t


def update_transition(transition_id: int, **kwargs) -> WorkflowTransition:
    t = db.session.get(WorkflowTransition, transition_id)
    if not t:
        raise NotFoundError("WorkflowTransition", transition_id)

    if "required_permission" in kwargs:
        _validate_edge(t.from_status, t.to_status, kwargs["required_permission"])
    for key in ("min_level", "sort_order"):
        if key in kwargs:
            kwargs[key] = parse_int_field(kwargs[key], key, minimum=0 if key == "min_level" else None)
    if "is_active" in kwargs:
        kwargs["is_active"] = parse_bool_field(kwargs["is_active"], "is_active")

    changes = {}
    for key in ("min_level", "required_permission", "description", "sort_order", "is_active"):
        if key in kwargs and getattr(t, key) != kwargs[key]:
            changes[key] = {"old": getattr(t, key), "new": kwargs[key]}
            setattr(t, key, kwargs[key])
    if "required_roles" in kwargs:
        changes["required_roles"] = kwargs["required_roles"]
        t.required_roles = _join(kwargs["required_roles"])
    if "allowed_by" in kwargs:
        t.allowed_by_label = _join(kwargs["allowed_by"])

    if changes:
        write_audit(entity_type="workflow_transition", entity_id=t.id,
                    action="workflow.update", diff=changes)
    db.session.commit()
    clear_workflow_cache()
    return t


def list_transitions(include_inactive: bool = False) -> list[dict]:
    q = WorkflowTransition.query
    if not include_inactive:
        q = q.filter_by(is_active=True)
    return [t.to_dict() for t in q.order_by(WorkflowTransition.sort_order, WorkflowTransition.id).all()]


def seed_default_transitions() -> int:
    """Insert missing default edges; existing edges are left alone."""
    existing = {
        (t.from_status, t.to_status) for t in WorkflowTransition.query.all()
    }
    created = 0
    for i, d in enumerate(DEFAULT_TRANSITIONS):
        if (d["from_status"], d["to_status"]) in existing:
            continue
        db.session.add(WorkflowTransition(
            from_status=d["from_status"],
            to_status=d["to_status"],
            min_level=d["min_level"],
            required_permission=d["required_permission"],
            description=d["description"],
            allowed_by_label=_join(d["allowed_by"]),
            sort_order=i,
        ))
        created += 1
    db.session.commit()
    clear_workflow_cache()
    return created

"""
Document history — append-only change log for documents.

Writers only ``add`` and ``flush``; the caller owns the transaction so a
status change and its history row commit together.
"""

import json
import logging
from datetime import datetime, timezone

from docguard.core.exceptions import ValidationError
from docguard.models import db
from docguard.models.document import HISTORY_ACTIONS, DocumentHistory, DocumentStatus

logger = logging.getLogger(__name__)

_STATUS_ACTIONS = {
    DocumentStatus.PUBLISHED: "published",
    DocumentStatus.APPROVED: "approved",
    DocumentStatus.REJECTED: "rejected",
    DocumentStatus.ARCHIVED: "archived",
}

_FIELD_MESSAGES = {
    "title": "Title updated",
    "description": "Description updated",
    "access_groups": "Access permissions updated",
    "is_public": "Visibility settings updated",
    "parent_document_id": "Document moved",
}


def _dump(value):
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load(value):
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


def add_document_history(
    *,
    document_id: int,
    action: str,
    changed_by_id: int | None,
    field_changed: str = None,
    old_value=None,
    new_value=None,
    status_from: str = None,
    status_to: str = None,
    change_reason: str = None,
    metadata: dict | None = None,
) -> DocumentHistory:
    if action not in HISTORY_ACTIONS:
        raise ValidationError(f"Unknown history action {action!r}", details={"action": action})
    entry = DocumentHistory(
        document_id=document_id,
        action=action,
        field_changed=field_changed,
        old_value=_dump(old_value),
        new_value=_dump(new_value),
        status_from=status_from,
        status_to=status_to,
        changed_by_id=changed_by_id,
        change_reason=change_reason,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def status_action(to_status: str) -> str:
    return _STATUS_ACTIONS.get(to_status, "status_changed")


def track_status_change(
    document_id: int,
    changed_by_id: int | None,
    from_status: str,
    to_status: str,
    reason: str = None,
    metadata: dict | None = None,
) -> DocumentHistory:
    return add_document_history(
        document_id=document_id,
        action=status_action(to_status),
        field_changed="status",
        status_from=from_status,
        status_to=to_status,
        changed_by_id=changed_by_id,
        change_reason=reason or f"Status changed from {from_status} to {to_status}",
        metadata={
            "from_status": from_status,
            "to_status": to_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(metadata or {}),
        },
    )


def history_message(entry: DocumentHistory) -> str:
    action = entry.action
    if action == "created":
        return "Document created"
    if action in ("published", "approved", "rejected", "archived"):
        return f"Document {action}"
    if action == "status_changed":
        return f"Status changed from {entry.status_from} to {entry.status_to}"
    if action == "moved":
        return "Document moved"
    if action == "updated":
        return _FIELD_MESSAGES.get(entry.field_changed, f"{entry.field_changed} updated")
    return entry.change_reason or f"Document {action}"


def get_history_timeline(document_id: int) -> list[dict]:
    """Newest first, with a display message and the actor's name."""
    rows = (
        DocumentHistory.query.filter_by(document_id=document_id)
        .order_by(DocumentHistory.created_at.desc(), DocumentHistory.id.desc())
        .all()
    )
    timeline = []
    for entry in rows:
        actor = entry.changed_by
        timeline.append({
            "id": entry.id,
            "action": entry.action,
            "message": history_message(entry),
            "changed_by": {
                "id": actor.id,
                "name": actor.full_name or actor.email,
                "email": actor.email,
            } if actor else None,
            "timestamp": entry.created_at.isoformat() if entry.created_at else None,
            "details": {
                "field_changed": entry.field_changed,
                "old_value": _load(entry.old_value),
                "new_value": _load(entry.new_value),
                "status_from": entry.status_from,
                "status_to": entry.status_to,
                "reason": entry.change_reason,
                "metadata": entry.meta,
            },
        })
    return timeline

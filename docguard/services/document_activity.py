"""
Document activity — view and download log with per-document counters.

Every view bumps ``view_count`` and appends a VIEW row.  Every download
bumps ``download_count``; a DOWNLOAD row is only appended for PUBLISHED
documents, and not again for the same user within
``DOWNLOAD_DEDUPE_SECONDS`` (default 300).

Counters are incremented in SQL and leave ``version`` and ``updated_at``
alone, so reads never conflict with a workflow compare-and-swap.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import update

from docguard.core.exceptions import ValidationError
from docguard.models import db
from docguard.models.document import (
    ACTIVITY_ACTIONS,
    ACTIVITY_DOWNLOAD,
    ACTIVITY_VIEW,
    Document,
    DocumentActivity,
    DocumentStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_SECONDS = 300


def _dedupe_window() -> timedelta:
    seconds = DEFAULT_DEDUPE_SECONDS
    if has_app_context():
        seconds = int(current_app.config.get("DOWNLOAD_DEDUPE_SECONDS", DEFAULT_DEDUPE_SECONDS))
    return timedelta(seconds=seconds)


def _increment(document_id: int, column: str) -> None:
    col = getattr(Document, column)
    db.session.execute(
        update(Document)
        .where(Document.id == document_id)
        .values({col: col + 1, Document.updated_at: Document.updated_at})
        .execution_options(synchronize_session=False)
    )


def _append(document, user_id, action, description, metadata=None, now=None):
    entry = DocumentActivity(
        document_id=document.id,
        user_id=user_id,
        action=action,
        description=description,
        metadata_json=json.dumps(metadata or {}, default=str),
        created_at=now or datetime.now(timezone.utc),
    )
    db.session.add(entry)
    return entry


def record_view(user, document, now: datetime | None = None) -> DocumentActivity:
    _increment(document.id, "view_count")
    entry = _append(document, user.id, ACTIVITY_VIEW,
                    f'Document "{document.title}" was viewed', now=now)
    db.session.commit()
    return entry


def record_download(user, document, now: datetime | None = None) -> DocumentActivity | None:
    """Count a download; returns the new log row, or None when none was written."""
    now = now or datetime.now(timezone.utc)
    _increment(document.id, "download_count")

    entry = None
    if document.status == DocumentStatus.PUBLISHED:
        recent = (
            DocumentActivity.query.filter(
                DocumentActivity.document_id == document.id,
                DocumentActivity.user_id == user.id,
                DocumentActivity.action == ACTIVITY_DOWNLOAD,
                DocumentActivity.created_at >= now - _dedupe_window(),
            )
            .order_by(DocumentActivity.created_at.desc())
            .first()
        )
        if recent is not None:
            logger.debug(
                "Skipping duplicate download log for document %s", document.id,
                extra={"user_id": user.id},
            )
        else:
            entry = _append(
                document, user.id, ACTIVITY_DOWNLOAD,
                f'Document "{document.title}" was downloaded',
                metadata={"source": "document_download", "version": document.version},
                now=now,
            )
    db.session.commit()
    return entry


def list_activity(document_id: int, action: str | None = None, limit: int = 100) -> list[dict]:
    q = DocumentActivity.query.filter_by(document_id=document_id)
    if action:
        if action not in ACTIVITY_ACTIONS:
            raise ValidationError(f"Unknown activity action {action!r}",
                                  details={"action": sorted(ACTIVITY_ACTIONS)})
        q = q.filter_by(action=action)
    rows = q.order_by(DocumentActivity.id.desc()).limit(limit).all()
    return [r.to_dict() for r in rows]

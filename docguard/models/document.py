"""
Document domain models.

Models:
    - Document: the protected resource; ``status`` is the workflow state.
    - WorkflowTransition: a gated edge in the document status state machine.
    - DocumentHistory: immutable, append-only record of document changes.
    - DocumentActivity: append-only view / download log behind the
      per-document counters.

Status lifecycle (default edges, see ``docguard.services.workflow_service``):

    DRAFT ─► IN_REVIEW ─► PENDING_APPROVAL ─► APPROVED ─► PUBLISHED
      ▲          │                 │                          │
      └──────────┘                 └─► REJECTED ─► DRAFT      └─► IN_REVIEW
    (any) ─► ARCHIVED ─► DRAFT
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from docguard.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

class DocumentStatus:
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    # Legacy name of IN_REVIEW; rows are migrated in place by
    # workflow_service.migrate_pending_review_to_in_review().
    PENDING_REVIEW = "PENDING_REVIEW"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"


DOCUMENT_STATUSES = {
    DocumentStatus.DRAFT,
    DocumentStatus.IN_REVIEW,
    DocumentStatus.PENDING_REVIEW,
    DocumentStatus.PENDING_APPROVAL,
    DocumentStatus.APPROVED,
    DocumentStatus.PUBLISHED,
    DocumentStatus.REJECTED,
    DocumentStatus.ARCHIVED,
}

STATUS_DESCRIPTIONS = {
    DocumentStatus.DRAFT: "Document is being created/edited. Ready for review submission.",
    DocumentStatus.IN_REVIEW: "Document is currently being reviewed.",
    DocumentStatus.PENDING_REVIEW: "Document is currently being reviewed.",
    DocumentStatus.PENDING_APPROVAL: "Document reviewed and awaiting approval from authorized personnel.",
    DocumentStatus.APPROVED: "Document approved and ready for publication.",
    DocumentStatus.PUBLISHED: "Document is published and accessible to users.",
    DocumentStatus.REJECTED: "Document rejected and needs revision.",
    DocumentStatus.ARCHIVED: "Document archived and no longer active.",
}

HISTORY_ACTIONS = {
    "created", "updated", "status_changed", "published", "approved",
    "rejected", "archived", "moved", "migrated",
}

ACTIVITY_VIEW = "VIEW"
ACTIVITY_DOWNLOAD = "DOWNLOAD"
ACTIVITY_ACTIONS = {ACTIVITY_VIEW, ACTIVITY_DOWNLOAD}


# ═══════════════════════════════════════════════════════════════
# DOCUMENTS
# ═══════════════════════════════════════════════════════════════
class Document(db.Model):
    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(30), nullable=False, default=DocumentStatus.DRAFT)
    # Optimistic lock counter, bumped on every status transition.
    version = db.Column(db.Integer, nullable=False, default=1)
    is_public = db.Column(db.Boolean, default=False, nullable=False)
    # Heterogeneous list: group ids, group names and role names share one list.
    access_groups = db.Column(db.JSON, default=list)

    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    updated_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_at = db.Column(db.DateTime)
    published_at = db.Column(db.DateTime)

    # Tree organisation; independent from access control.
    parent_document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True
    )
    hierarchy_level = db.Column(db.Integer, default=0)
    hierarchy_path = db.Column(db.String(500), default="")

    # Read counters; never touch version or updated_at.
    view_count = db.Column(db.Integer, nullable=False, default=0)
    download_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_documents_status", "status"),
        db.Index("ix_documents_created_by", "created_by_id"),
        db.Index("ix_documents_parent", "parent_document_id"),
    )

    created_by = db.relationship("User", foreign_keys=[created_by_id])
    parent = db.relationship("Document", remote_side=[id], backref="children")
    history = db.relationship(
        "DocumentHistory", back_populates="document", lazy="dynamic",
        order_by="DocumentHistory.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "version": self.version,
            "is_public": self.is_public,
            "access_groups": list(self.access_groups or []),
            "created_by_id": self.created_by_id,
            "updated_by_id": self.updated_by_id,
            "approved_by_id": self.approved_by_id,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "parent_document_id": self.parent_document_id,
            "hierarchy_level": self.hierarchy_level,
            "hierarchy_path": self.hierarchy_path,
            "view_count": self.view_count or 0,
            "download_count": self.download_count or 0,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# WORKFLOW TRANSITIONS
# ═══════════════════════════════════════════════════════════════
class WorkflowTransition(db.Model):
    """
    One directed edge of the status state machine.

    ``required_permission`` may hold a legacy ``module.action`` permission
    name or a ``CATEGORY_ACTION`` capability name; both are checked.
    ``required_roles`` optionally restricts the edge to a comma-separated
    list of role names (compared after ``org_`` normalisation).
    """

    __tablename__ = "workflow_transitions"

    id = db.Column(db.Integer, primary_key=True)
    from_status = db.Column(db.String(30), nullable=False)
    to_status = db.Column(db.String(30), nullable=False)
    min_level = db.Column(db.Integer, nullable=False, default=0)
    required_permission = db.Column(db.String(100))
    required_roles = db.Column(db.String(500))
    description = db.Column(db.String(300))
    allowed_by_label = db.Column(db.String(300))
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("from_status", "to_status", name="uq_workflow_edge"),
    )

    @property
    def required_role_list(self) -> list[str]:
        if not self.required_roles:
            return []
        return [r.strip() for r in self.required_roles.split(",") if r.strip()]

    @property
    def allowed_by(self) -> list[str]:
        if not self.allowed_by_label:
            return []
        return [s.strip() for s in self.allowed_by_label.split(",") if s.strip()]

    def to_dict(self):
        return {
            "id": self.id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "min_level": self.min_level,
            "required_permission": self.required_permission,
            "required_roles": self.required_role_list,
            "description": self.description,
            "allowed_by": self.allowed_by,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════
# DOCUMENT HISTORY (append-only)
# ═══════════════════════════════════════════════════════════════
class DocumentHistory(db.Model):
    __tablename__ = "document_history"
    __table_args__ = (
        db.Index("idx_doc_history_document", "document_id"),
        db.Index("idx_doc_history_actor", "changed_by_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    action = db.Column(db.String(40), nullable=False)
    field_changed = db.Column(db.String(60))
    old_value = db.Column(db.Text)
    new_value = db.Column(db.Text)
    status_from = db.Column(db.String(30))
    status_to = db.Column(db.String(30))
    changed_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    change_reason = db.Column(db.Text)
    metadata_json = db.Column("metadata", db.Text, default="{}")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    document = db.relationship("Document", back_populates="history")
    changed_by = db.relationship("User")

    @property
    def meta(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "action": self.action,
            "field_changed": self.field_changed,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "status_from": self.status_from,
            "status_to": self.status_to,
            "changed_by_id": self.changed_by_id,
            "change_reason": self.change_reason,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<DocumentHistory {self.id}: {self.action} on document/{self.document_id}>"


@_sa_event.listens_for(DocumentHistory, "before_update")
def _block_history_update(mapper, connection, target) -> None:  # noqa: ANN001
    """History rows are immutable once written."""
    raise RuntimeError(
        f"document_history row {target.id} is append-only and cannot be updated"
    )


@_sa_event.listens_for(DocumentHistory, "before_delete")
def _block_history_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(
        f"document_history row {target.id} is append-only and cannot be deleted"
    )


# ═══════════════════════════════════════════════════════════════
# DOCUMENT ACTIVITY (append-only)
# ═══════════════════════════════════════════════════════════════
class DocumentActivity(db.Model):
    """One view or download of a document by a user."""

    __tablename__ = "document_activity"
    __table_args__ = (
        db.Index("idx_doc_activity_lookup", "document_id", "user_id", "action", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action = db.Column(db.String(20), nullable=False)
    description = db.Column(db.String(400))
    metadata_json = db.Column("metadata", db.Text, default="{}")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        try:
            meta = json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            meta = {}
        return {
            "id": self.id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "action": self.action,
            "description": self.description,
            "metadata": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@_sa_event.listens_for(DocumentActivity, "before_update")
def _block_activity_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(
        f"document_activity row {target.id} is append-only and cannot be updated"
    )

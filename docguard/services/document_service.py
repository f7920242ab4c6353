"""
Document Service — document records, edits and the document tree.

Status changes are not made here; they go through
``workflow_service.apply_transition``.  Tree placement
(``parent_document_id`` / ``hierarchy_*``) is organisational only and has
no effect on access decisions.
"""

import logging

from docguard.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from docguard.models import db
from docguard.models.document import Document, DocumentStatus
from docguard.services import document_access, document_history, permission_service
from docguard.utils.helpers import parse_bool_field

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "is_public", "access_groups")
MAX_HIERARCHY_DEPTH = 10


def _validate_access_groups(value):
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("access_groups must be a list", details={"access_groups": "list"})
    cleaned = []
    for entry in value:
        if isinstance(entry, bool) or not isinstance(entry, (str, int)):
            raise ValidationError(
                "access_groups entries must be group ids, group names or role names",
                details={"access_groups": repr(entry)},
            )
        entry = entry.strip() if isinstance(entry, str) else entry
        if entry != "" and entry not in cleaned:
            cleaned.append(entry)
    return cleaned


def _hierarchy_of(parent: Document | None) -> tuple[int, str]:
    if parent is None:
        return 0, ""
    prefix = parent.hierarchy_path or ""
    return (parent.hierarchy_level or 0) + 1, f"{prefix}/{parent.id}"


# ═══════════════════════════════════════════════════════════════
# CRUD
# ═══════════════════════════════════════════════════════════════
def create_document(
    user,
    title: str,
    description: str = None,
    is_public: bool = False,
    access_groups: list = None,
    parent_document_id: int = None,
) -> Document:
    if not permission_service.has_equivalent_grant(user.id, "DOCUMENT_CREATE"):
        raise ForbiddenError(required="DOCUMENT_CREATE", reason="missing_capability")
    if not title or not title.strip():
        raise ValidationError("Title is required", details={"title": "required"})
    is_public = parse_bool_field(is_public, "is_public")

    parent = None
    if parent_document_id is not None:
        parent = get_document(parent_document_id)
    level, path = _hierarchy_of(parent)
    if level > MAX_HIERARCHY_DEPTH:
        raise ValidationError("Hierarchy too deep", details={"max_depth": MAX_HIERARCHY_DEPTH})

    doc = Document(
        title=title.strip(),
        description=description,
        status=DocumentStatus.DRAFT,
        is_public=is_public,
        access_groups=_validate_access_groups(access_groups),
        created_by_id=user.id,
        updated_by_id=user.id,
        parent_document_id=parent.id if parent else None,
        hierarchy_level=level,
        hierarchy_path=path,
    )
    db.session.add(doc)
    db.session.flush()
    document_history.add_document_history(
        document_id=doc.id,
        action="created",
        changed_by_id=user.id,
        new_value={"title": doc.title, "is_public": doc.is_public},
        change_reason="Document created",
    )
    db.session.commit()
    logger.info("Document %s created", doc.id, extra={"user_id": user.id})
    return doc


def get_document(document_id: int) -> Document:
    doc = db.session.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document", document_id)
    return doc


def get_viewable_document(user, document_id: int) -> Document:
    doc = get_document(document_id)
    if not document_access.can_view_document(user, doc):
        raise ForbiddenError(required="document.view", reason="missing_capability")
    return doc


def update_document(user, document_id: int, **changes) -> Document:
    """Edit metadata; the owner or a DOCUMENT_EDIT holder may do this."""
    doc = get_document(document_id)
    is_owner = doc.created_by_id == user.id
    if not is_owner and not permission_service.has_capability(user.id, "DOCUMENT_EDIT"):
        raise ForbiddenError(required="DOCUMENT_EDIT", reason="missing_capability")

    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("Title is required", details={"title": "required"})
    if "access_groups" in changes:
        changes["access_groups"] = _validate_access_groups(changes["access_groups"])
    if "is_public" in changes:
        changes["is_public"] = parse_bool_field(changes["is_public"], "is_public")

    for key in EDITABLE_FIELDS:
        if key not in changes:
            continue
        old, new = getattr(doc, key), changes[key]
        if key == "title":
            new = new.strip()
        if old == new:
            continue
        setattr(doc, key, new)
        document_history.add_document_history(
            document_id=doc.id,
            action="updated",
            field_changed=key,
            old_value=old,
            new_value=new,
            changed_by_id=user.id,
            change_reason=f"Updated {key}",
        )
    doc.updated_by_id = user.id
    db.session.commit()
    return doc


def list_documents_for_user(user, status: str = None) -> list[Document]:
    q = Document.query
    if status:
        q = q.filter_by(status=status)
    docs = q.order_by(Document.hierarchy_path, Document.id).all()
    return document_access.filter_viewable_documents(user, docs)


# ═══════════════════════════════════════════════════════════════
# Hierarchy
# ═══════════════════════════════════════════════════════════════
def _descendants(doc: Document) -> list[Document]:
    prefix = f"{doc.hierarchy_path or ''}/{doc.id}"
    return Document.query.filter(
        (Document.hierarchy_path == prefix) | Document.hierarchy_path.like(f"{prefix}/%")
    ).all()


def move_document(user, document_id: int, new_parent_id: int | None) -> Document:
    doc = get_document(document_id)
    if not permission_service.has_capability(user.id, "DOCUMENT_EDIT") and \
            doc.created_by_id != user.id:
        raise ForbiddenError(required="DOCUMENT_EDIT", reason="missing_capability")

    parent = get_document(new_parent_id) if new_parent_id is not None else None
    descendants = _descendants(doc)
    if parent is not None:
        if parent.id == doc.id or parent.id in {d.id for d in descendants}:
            raise ValidationError("A document cannot be moved under itself",
                                  details={"parent_document_id": new_parent_id})
        subtree_depth = max(
            ((d.hierarchy_level or 0) - (doc.hierarchy_level or 0) for d in descendants),
            default=0,
        )
        if (parent.hierarchy_level or 0) + 1 + subtree_depth > MAX_HIERARCHY_DEPTH:
            raise ValidationError("Hierarchy too deep",
                                  details={"max_depth": MAX_HIERARCHY_DEPTH})

    old_prefix = f"{doc.hierarchy_path or ''}/{doc.id}"
    old_parent_id = doc.parent_document_id
    old_level = doc.hierarchy_level or 0

    level, path = _hierarchy_of(parent)
    doc.parent_document_id = parent.id if parent else None
    doc.hierarchy_level = level
    doc.hierarchy_path = path

    new_prefix = f"{path}/{doc.id}"
    delta = level - old_level
    for d in descendants:
        d.hierarchy_path = new_prefix + (d.hierarchy_path or "")[len(old_prefix):]
        d.hierarchy_level = (d.hierarchy_level or 0) + delta

    document_history.add_document_history(
        document_id=doc.id,
        action="moved",
        field_changed="parent_document_id",
        old_value=old_parent_id,
        new_value=doc.parent_document_id,
        changed_by_id=user.id,
        change_reason="Document moved",
    )
    db.session.commit()
    return doc

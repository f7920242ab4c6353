"""Document service tests: creation rights, edits, history and the tree."""

import pytest

from docguard.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from docguard.models.document import DocumentHistory, DocumentStatus
from docguard.services import document_service as ds
from docguard.services.document_history import get_history_timeline


@pytest.fixture()
def manager(seeded, make_user):
    return make_user("manager")


def _actions(doc):
    return [h.action for h in DocumentHistory.query.filter_by(document_id=doc.id)
            .order_by(DocumentHistory.id)]


# ═══════════════════════════════════════════════════════════════
# Create / update
# ═══════════════════════════════════════════════════════════════

def test_create_document(manager):
    doc = ds.create_document(manager, "  Travel Policy ", access_groups=["Legal", " Legal", 3])
    assert doc.title == "Travel Policy"
    assert doc.status == DocumentStatus.DRAFT
    assert doc.version == 1
    assert doc.access_groups == ["Legal", 3]
    assert doc.created_by_id == manager.id
    assert _actions(doc) == ["created"]


def test_create_requires_create_right(seeded, make_user):
    viewer = make_user("viewer")
    with pytest.raises(ForbiddenError) as exc:
        ds.create_document(viewer, "Nope")
    assert exc.value.reason == "missing_capability"


@pytest.mark.parametrize("kwargs", [
    {"title": ""},
    {"title": "Ok", "access_groups": "Legal"},
    {"title": "Ok", "access_groups": [True]},
    {"title": "Ok", "access_groups": [{"id": 1}]},
])
def test_create_validation(manager, kwargs):
    with pytest.raises(ValidationError):
        ds.create_document(manager, **kwargs)


@pytest.mark.parametrize("value", ["false", "yes", 0, 1, None])
def test_is_public_must_be_a_boolean(manager, value):
    with pytest.raises(ValidationError) as exc:
        ds.create_document(manager, "Draft", is_public=value)
    assert exc.value.details == {"is_public": "boolean"}

    doc = ds.create_document(manager, "Draft")
    with pytest.raises(ValidationError):
        ds.update_document(manager, doc.id, is_public=value)
    assert doc.is_public is False
    assert _actions(doc) == ["created"]


def test_update_by_owner_records_changed_fields_only(seeded, make_user, make_document):
    owner = make_user("members")
    doc = make_document(owner=owner, title="Old")
    ds.update_document(owner, doc.id, title="New", is_public=False, description="body")
    assert doc.title == "New"
    entries = DocumentHistory.query.filter_by(document_id=doc.id, action="updated").all()
    assert sorted(e.field_changed for e in entries) == ["description", "title"]

    timeline = get_history_timeline(doc.id)
    assert {t["message"] for t in timeline} == {"Title updated", "Description updated"}
    assert timeline[0]["changed_by"]["id"] == owner.id


def test_update_by_non_owner_requires_edit(seeded, make_user, make_document):
    owner = make_user("manager")
    member = make_user("members")
    editor = make_user("manager")
    doc = make_document(owner=owner)
    with pytest.raises(ForbiddenError):
        ds.update_document(member, doc.id, title="Hijack")
    ds.update_document(editor, doc.id, access_groups=["Finance"])
    assert doc.access_groups == ["Finance"]
    assert doc.updated_by_id == editor.id


def test_update_rejects_blank_title(manager, make_document):
    doc = make_document(owner=manager)
    with pytest.raises(ValidationError):
        ds.update_document(manager, doc.id, title="   ")


def test_get_viewable_document(seeded, make_user, make_document):
    owner = make_user("manager")
    stranger = make_user("viewer")
    doc = make_document(owner=owner, access_groups=["Legal"])
    assert ds.get_viewable_document(owner, doc.id) is doc
    with pytest.raises(ForbiddenError):
        ds.get_viewable_document(stranger, doc.id)
    with pytest.raises(NotFoundError):
        ds.get_viewable_document(owner, 404)


def test_list_documents_filters_by_access_and_status(seeded, make_user, make_document):
    owner = make_user("manager")
    reader = make_user("viewer")
    mine = make_document(owner=owner)
    public = make_document(owner=owner, is_public=True, status=DocumentStatus.PUBLISHED)
    assert [d.id for d in ds.list_documents_for_user(owner)] == [mine.id, public.id]
    assert [d.id for d in ds.list_documents_for_user(reader)] == [public.id]
    assert ds.list_documents_for_user(owner, status=DocumentStatus.DRAFT) == [mine]


# ═══════════════════════════════════════════════════════════════
# Hierarchy
# ═══════════════════════════════════════════════════════════════

def test_child_document_hierarchy(manager):
    root = ds.create_document(manager, "Handbook")
    child = ds.create_document(manager, "Chapter 1", parent_document_id=root.id)
    leaf = ds.create_document(manager, "Section 1.1", parent_document_id=child.id)
    assert (child.hierarchy_level, child.hierarchy_path) == (1, f"/{root.id}")
    assert (leaf.hierarchy_level, leaf.hierarchy_path) == (2, f"/{root.id}/{child.id}")


def test_move_rewrites_descendants(manager):
    a = ds.create_document(manager, "A")
    b = ds.create_document(manager, "B")
    child = ds.create_document(manager, "A.1", parent_document_id=a.id)
    leaf = ds.create_document(manager, "A.1.1", parent_document_id=child.id)

    ds.move_document(manager, child.id, b.id)
    assert child.parent_document_id == b.id
    assert child.hierarchy_path == f"/{b.id}"
    assert leaf.hierarchy_path == f"/{b.id}/{child.id}"
    assert leaf.hierarchy_level == 2
    assert "moved" in _actions(child)

    ds.move_document(manager, child.id, None)
    assert (child.hierarchy_level, child.hierarchy_path) == (0, "")
    assert (leaf.hierarchy_level, leaf.hierarchy_path) == (1, f"/{child.id}")


def test_move_under_self_or_descendant_rejected(manager):
    a = ds.create_document(manager, "A")
    child = ds.create_document(manager, "A.1", parent_document_id=a.id)
    with pytest.raises(ValidationError):
        ds.move_document(manager, a.id, a.id)
    with pytest.raises(ValidationError):
        ds.move_document(manager, a.id, child.id)


def test_hierarchy_depth_limit(manager):
    parent = ds.create_document(manager, "Level 0")
    for level in range(1, ds.MAX_HIERARCHY_DEPTH + 1):
        parent = ds.create_document(manager, f"Level {level}", parent_document_id=parent.id)
    assert parent.hierarchy_level == ds.MAX_HIERARCHY_DEPTH
    with pytest.raises(ValidationError):
        ds.create_document(manager, "Too deep", parent_document_id=parent.id)

    loose = ds.create_document(manager, "Loose")
    with pytest.raises(ValidationError):
        ds.move_document(manager, loose.id, parent.id)


def test_move_requires_edit_or_ownership(seeded, make_user, make_document):
    owner = make_user("members")
    other = make_user("members")
    doc = make_document(owner=owner)
    with pytest.raises(ForbiddenError):
        ds.move_document(other, doc.id, None)
    ds.move_document(owner, doc.id, None)


def test_move_counts_depth_of_moved_subtree(manager):
    chain = [ds.create_document(manager, "Level 0")]
    for level in range(1, 9):
        chain.append(ds.create_document(manager, f"Level {level}", parent_document_id=chain[-1].id))

    branch = ds.create_document(manager, "Branch")
    child = ds.create_document(manager, "Branch.1", parent_document_id=branch.id)
    ds.create_document(manager, "Branch.1.1", parent_document_id=child.id)

    # Branch would land at 9, its grandchild at 11.
    with pytest.raises(ValidationError):
        ds.move_document(manager, branch.id, chain[8].id)
    assert branch.parent_document_id is None

    ds.move_document(manager, branch.id, chain[7].id)
    assert max(d.hierarchy_level for d in ds._descendants(branch)) == ds.MAX_HIERARCHY_DEPTH

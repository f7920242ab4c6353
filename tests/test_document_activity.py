"""Document activity log tests: counters, VIEW rows and download dedupe."""

from datetime import datetime, timedelta, timezone

import pytest

from docguard.core.exceptions import ValidationError
from docguard.models import db
from docguard.models.document import Document, DocumentActivity, DocumentStatus
from docguard.services import document_activity


@pytest.fixture()
def reader(seeded, make_user):
    return make_user("manager")


def _rows(doc, action):
    return DocumentActivity.query.filter_by(document_id=doc.id, action=action).count()


def test_every_view_is_counted_and_logged(reader, make_document):
    doc = make_document(owner=reader)
    document_activity.record_view(reader, doc)
    document_activity.record_view(reader, doc)

    fresh = db.session.get(Document, doc.id)
    assert fresh.view_count == 2
    assert fresh.download_count == 0
    assert _rows(doc, "VIEW") == 2
    assert document_activity.list_activity(doc.id)[0]["description"] == 'Document "Policy" was viewed'


def test_counters_leave_version_and_updated_at(reader, make_document):
    doc = make_document(owner=reader, status=DocumentStatus.PUBLISHED)
    version, updated_at = doc.version, doc.updated_at
    document_activity.record_view(reader, doc)
    document_activity.record_download(reader, doc)
    fresh = db.session.get(Document, doc.id)
    assert fresh.version == version
    assert fresh.updated_at == updated_at


def test_download_of_unpublished_document_counts_without_log(reader, make_document):
    doc = make_document(owner=reader)
    assert document_activity.record_download(reader, doc) is None
    assert db.session.get(Document, doc.id).download_count == 1
    assert _rows(doc, "DOWNLOAD") == 0


def test_repeat_download_inside_window_is_not_logged_twice(reader, make_document):
    doc = make_document(owner=reader, status=DocumentStatus.PUBLISHED)
    start = datetime.now(timezone.utc)

    assert document_activity.record_download(reader, doc, now=start) is not None
    assert document_activity.record_download(reader, doc, now=start + timedelta(minutes=4)) is None
    assert _rows(doc, "DOWNLOAD") == 1

    later = document_activity.record_download(reader, doc, now=start + timedelta(minutes=6))
    assert later is not None
    assert later.to_dict()["metadata"]["source"] == "document_download"
    assert _rows(doc, "DOWNLOAD") == 2
    assert db.session.get(Document, doc.id).download_count == 3


def test_dedupe_is_per_user(seeded, make_user, make_document):
    first, second = make_user("manager"), make_user("manager")
    doc = make_document(owner=first, status=DocumentStatus.PUBLISHED)
    now = datetime.now(timezone.utc)
    document_activity.record_download(first, doc, now=now)
    assert document_activity.record_download(second, doc, now=now) is not None
    assert _rows(doc, "DOWNLOAD") == 2


def test_list_activity_filters_by_action(reader, make_document):
    doc = make_document(owner=reader, status=DocumentStatus.PUBLISHED)
    document_activity.record_view(reader, doc)
    document_activity.record_download(reader, doc)

    assert [a["action"] for a in document_activity.list_activity(doc.id)] == ["DOWNLOAD", "VIEW"]
    assert len(document_activity.list_activity(doc.id, action="VIEW")) == 1
    with pytest.raises(ValidationError):
        document_activity.list_activity(doc.id, action="PRINT")


def test_activity_rows_are_append_only(reader, make_document):
    doc = make_document(owner=reader)
    entry = document_activity.record_view(reader, doc)
    entry.description = "tampered"
    with pytest.raises(RuntimeError, match="append-only"):
        db.session.flush()
    db.session.rollback()

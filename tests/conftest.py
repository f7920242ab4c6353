"""
Shared pytest fixtures for the docguard test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - session: Per-test table create/drop + cache flush (autouse)
    - client: Flask test client (function-scoped)
    - seeded: default vocabulary, roles, resources and transitions
    - make_user: factory for users with role names and an optional group
    - make_document: factory for documents with explicit fields
    - auth_headers: Bearer header for a user's session token
"""

import pytest

from docguard import create_app
from docguard.models import db as _db
from docguard.models.auth import Group, Role, User, UserRole
from docguard.models.document import Document, DocumentStatus
from docguard.services import cache_service
from docguard.services.session_service import issue_session_token


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: fresh tables and an empty cache (ids are reused)."""
    with app.app_context():
        _db.create_all()
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def seeded():
    """Seed the default authorization configuration."""
    from docguard.services.seed_service import seed_defaults
    return seed_defaults()


@pytest.fixture()
def make_group():
    def _make(name, level=0):
        g = Group(name=name, display_name=name, level=level)
        _db.session.add(g)
        _db.session.commit()
        return g
    return _make


@pytest.fixture()
def make_user():
    """Create a user holding the given (existing) role names."""
    counter = {"n": 0}

    def _make(*role_names, group=None, email=None, is_active=True):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@docguard.io",
            username=f"user{counter['n']}",
            full_name=f"User {counter['n']}",
            group_id=group.id if group is not None else None,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.flush()
        for name in role_names:
            role = Role.query.filter_by(name=name).one()
            _db.session.add(UserRole(user_id=user.id, role_id=role.id))
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def make_document():
    def _make(owner=None, status=DocumentStatus.DRAFT, is_public=False,
              access_groups=None, title="Policy"):
        doc = Document(
            title=title,
            status=status,
            is_public=is_public,
            access_groups=access_groups or [],
            created_by_id=owner.id if owner is not None else None,
        )
        _db.session.add(doc)
        _db.session.commit()
        return doc
    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user, now=None):
        return {"Authorization": f"Bearer {issue_session_token(user.id, now=now)}"}
    return _headers

"""
Documents Blueprint.

Endpoints:
  GET   /api/v1/documents                 — documents the principal may view
  POST  /api/v1/documents                 — create (DRAFT)
  GET   /api/v1/documents/:id             — view policy (logged)
  PATCH /api/v1/documents/:id             — edit metadata
  GET   /api/v1/documents/:id/download    — download policy (metadata only, logged)
  GET   /api/v1/documents/:id/status      — allowed transitions
  POST  /api/v1/documents/:id/status      — apply a transition
  GET   /api/v1/documents/:id/history     — timeline
  GET   /api/v1/documents/:id/activity    — view / download log
  POST  /api/v1/documents/:id/move        — re-parent in the document tree

Service exceptions are mapped by the app-level handlers; a failed
transition surfaces as 403 (with reason) or 409, never as a crash.
"""

import logging

from flask import Blueprint, g, jsonify, request

from docguard.core.exceptions import UnauthenticatedError
from docguard.middleware.permission_required import require_auth
from docguard.models import db
from docguard.models.auth import User
from docguard.models.document import STATUS_DESCRIPTIONS
from docguard.services import (
    document_access,
    document_activity,
    document_history,
    document_service,
    workflow_service,
)
from docguard.utils.errors import E, api_error, forbidden

logger = logging.getLogger(__name__)

documents_bp = Blueprint("documents_bp", __name__, url_prefix="/api/v1/documents")


def _current_user() -> User:
    user = db.session.get(User, g.principal.user_id)
    if user is None or not user.is_active:
        raise UnauthenticatedError("User is inactive or unknown")
    return user


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═══════════════════════════════════════════════════════════════
# CRUD
# ═══════════════════════════════════════════════════════════════

@documents_bp.route("", methods=["GET"])
@require_auth
def list_documents():
    user = _current_user()
    docs = document_service.list_documents_for_user(user, status=request.args.get("status"))
    return jsonify({"documents": [d.to_dict() for d in docs], "total": len(docs)}), 200


@documents_bp.route("", methods=["POST"])
@require_auth
def create_document():
    data = _body()
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "Title is required", details={"title": "required"})
    doc = document_service.create_document(
        _current_user(),
        title=data["title"],
        description=data.get("description"),
        is_public=data.get("is_public", False),
        access_groups=data.get("access_groups"),
        parent_document_id=data.get("parent_document_id"),
    )
    return jsonify(doc.to_dict()), 201


@documents_bp.route("/<int:doc_id>", methods=["GET"])
@require_auth
def get_document(doc_id):
    user = _current_user()
    doc = document_service.get_document(doc_id)
    decision = document_access.explain_view_access(user, doc)
    if not decision.allowed:
        return forbidden("missing_capability")
    document_activity.record_view(user, doc)
    out = doc.to_dict()
    out["access_rule"] = decision.rule
    return jsonify(out), 200


@documents_bp.route("/<int:doc_id>", methods=["PATCH"])
@require_auth
def update_document(doc_id):
    data = _body()
    changes = {k: data[k] for k in document_service.EDITABLE_FIELDS if k in data}
    if not changes:
        return api_error(E.VALIDATION_REQUIRED, "No editable fields supplied",
                         details={"fields": list(document_service.EDITABLE_FIELDS)})
    doc = document_service.update_document(_current_user(), doc_id, **changes)
    return jsonify(doc.to_dict()), 200


@documents_bp.route("/<int:doc_id>/download", methods=["GET"])
@require_auth
def download_document(doc_id):
    user = _current_user()
    doc = document_service.get_document(doc_id)
    if not document_access.can_download_document(user, doc):
        return forbidden("missing_capability")
    document_activity.record_download(user, doc)
    return jsonify({
        "document_id": doc.id,
        "title": doc.title,
        "version": doc.version,
        "status": doc.status,
        "can_print": document_access.can_print_document(user, doc),
        "can_copy": document_access.can_copy_document(user, doc),
    }), 200


# ═══════════════════════════════════════════════════════════════
# Workflow
# ═══════════════════════════════════════════════════════════════

@documents_bp.route("/<int:doc_id>/status", methods=["GET"])
@require_auth
def allowed_transitions(doc_id):
    user = _current_user()
    doc = document_service.get_viewable_document(user, doc_id)
    return jsonify({
        "document_id": doc.id,
        "status": doc.status,
        "status_description": STATUS_DESCRIPTIONS.get(doc.status),
        "version": doc.version,
        "transitions": workflow_service.get_allowed_transitions(user, doc),
    }), 200


@documents_bp.route("/<int:doc_id>/status", methods=["POST"])
@require_auth
def change_status(doc_id):
    data = _body()
    to_status = data.get("to_status")
    if not to_status:
        return api_error(E.VALIDATION_REQUIRED, "to_status is required",
                         details={"to_status": "required"})
    user = _current_user()
    document_service.get_viewable_document(user, doc_id)
    result = workflow_service.apply_transition(
        user,
        doc_id,
        to_status,
        reason=data.get("reason"),
        expected_from_status=data.get("expected_from_status"),
    )
    return jsonify(result.to_dict()), 200


@documents_bp.route("/<int:doc_id>/history", methods=["GET"])
@require_auth
def history(doc_id):
    document_service.get_viewable_document(_current_user(), doc_id)
    return jsonify({"history": document_history.get_history_timeline(doc_id)}), 200


@documents_bp.route("/<int:doc_id>/activity", methods=["GET"])
@require_auth
def activity(doc_id):
    document_service.get_viewable_document(_current_user(), doc_id)
    limit = min(request.args.get("limit", 100, type=int), 500)
    items = document_activity.list_activity(doc_id, action=request.args.get("action"), limit=limit)
    return jsonify({"activity": items}), 200


# ═══════════════════════════════════════════════════════════════
# Hierarchy
# ═══════════════════════════════════════════════════════════════

@documents_bp.route("/<int:doc_id>/move", methods=["POST"])
@require_auth
def move(doc_id):
    data = _body()
    if "parent_document_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "parent_document_id is required",
                         details={"parent_document_id": "required"})
    doc = document_service.move_document(_current_user(), doc_id, data["parent_document_id"])
    return jsonify(doc.to_dict()), 200

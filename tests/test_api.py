"""
HTTP tests: session middleware, guards, error bodies and the document,
access and admin blueprints.
"""

import time

import pytest

from docguard.models import db
from docguard.models.document import DocumentStatus
from docguard.services import role_admin_service

S = DocumentStatus


@pytest.fixture()
def admin(seeded, make_user):
    return make_user("administrator")


@pytest.fixture()
def manager(seeded, make_user):
    return make_user("manager")


# ═══════════════════════════════════════════════════════════════
# Health & session issue
# ═══════════════════════════════════════════════════════════════

def test_health(client):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    body = res.get_json()
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["cache"]["status"] == "ok"
    assert res.headers["X-Request-ID"]


def test_issue_session(client, manager):
    res = client.post("/api/v1/auth/session", json={"user_id": manager.id})
    assert res.status_code == 201
    token = res.get_json()["token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    body = me.get_json()
    assert body["user_id"] == manager.id
    assert body["roles"] == ["manager"]
    assert body["superuser"] is False


def test_issue_session_validation(app, client, manager):
    assert client.post("/api/v1/auth/session", json={"user_id": "1"}).status_code == 400
    assert client.post("/api/v1/auth/session", json={"user_id": 9999}).status_code == 401

    app.config["SESSION_ISSUE_ENABLED"] = False
    try:
        assert client.post("/api/v1/auth/session", json={"user_id": manager.id}).status_code == 404
    finally:
        app.config["SESSION_ISSUE_ENABLED"] = True


# ═══════════════════════════════════════════════════════════════
# Authentication middleware
# ═══════════════════════════════════════════════════════════════

def test_missing_or_bad_token_is_401(client, seeded):
    res = client.get("/api/v1/auth/me")
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"
    res = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_stale_snapshot_refreshed_with_header(client, manager, auth_headers):
    headers = auth_headers(manager, now=time.time() - 120)
    role_admin_service.revoke_capability("manager", "DASHBOARD_VIEW")

    res = client.get("/api/v1/access/capabilities", headers=headers)
    assert res.status_code == 200
    assert "DASHBOARD_VIEW" not in res.get_json()["capabilities"]
    new_token = res.headers.get("X-Session-Token")
    assert new_token

    again = client.get("/api/v1/access/capabilities",
                       headers={"Authorization": f"Bearer {new_token}"})
    assert "X-Session-Token" not in again.headers


def test_fresh_snapshot_served_without_refresh(client, manager, auth_headers):
    headers = auth_headers(manager)
    role_admin_service.revoke_capability("manager", "DASHBOARD_VIEW")
    res = client.get("/api/v1/access/capabilities", headers=headers)
    assert "DASHBOARD_VIEW" in res.get_json()["capabilities"]
    assert "X-Session-Token" not in res.headers


def test_deactivated_user_rejected_at_refresh(client, manager, auth_headers):
    headers = auth_headers(manager, now=time.time() - 120)
    manager.is_active = False
    db.session.commit()
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 401


# ═══════════════════════════════════════════════════════════════
# Guards
# ═══════════════════════════════════════════════════════════════

def test_capability_guard_body(client, manager, auth_headers):
    res = client.get("/api/v1/admin/roles", headers=auth_headers(manager))
    assert res.status_code == 403
    body = res.get_json()
    assert body["error"] == "Insufficient permissions"
    assert body["code"] == "ERR_FORBIDDEN"
    assert body["details"] == {"reason": "missing_capability"}
    assert "ADMIN_ACCESS" not in str(body)


def test_resource_guard_blocks_api(client, seeded, make_user, auth_headers):
    viewer = make_user("viewer")
    res = client.post("/api/v1/documents", json={"title": "x"}, headers=auth_headers(viewer))
    assert res.status_code == 403
    assert res.get_json()["details"]["reason"] == "missing_capability"


def test_access_check_and_navigation(client, manager, auth_headers):
    headers = auth_headers(manager)
    res = client.post("/api/v1/access/check",
                      json={"path": "/api/v1/documents/5", "method": "patch"}, headers=headers)
    assert res.get_json() == {"path": "/api/v1/documents/5", "method": "PATCH", "allowed": True}

    res = client.post("/api/v1/access/check", json={"path": "/admin"}, headers=headers)
    assert res.get_json()["allowed"] is False

    nav = client.get("/api/v1/access/navigation", headers=headers).get_json()
    paths = [n["path"] for n in nav["navigation"]]
    assert "/documents" in paths and "/admin" not in paths
    assert "/documents/:id/edit" in nav["routes"]
    assert all(set(a) == {"path", "method"} for a in nav["apis"])

    res = client.get("/api/v1/access/capabilities/DOCUMENT_EDIT", headers=headers)
    assert res.get_json()["decision"] == "allow_role_grant"
    res = client.get("/api/v1/access/capabilities/ADMIN_ACCESS", headers=headers)
    assert res.get_json() == {"allowed": False, "decision": "deny_by_default",
                              "roles": ["manager"], "capability": "ADMIN_ACCESS"}

    assert client.post("/api/v1/access/check", json={}, headers=headers).status_code == 400


# ═══════════════════════════════════════════════════════════════
# Documents
# ═══════════════════════════════════════════════════════════════

def test_document_lifecycle_over_http(client, seeded, make_user, auth_headers):
    manager = make_user("manager")
    gm = make_user("gm")
    res = client.post("/api/v1/documents", json={"title": "SOP", "access_groups": ["gm"]},
                      headers=auth_headers(manager))
    assert res.status_code == 201
    doc_id = res.get_json()["id"]

    status = client.get(f"/api/v1/documents/{doc_id}/status", headers=auth_headers(manager))
    assert [t["to_status"] for t in status.get_json()["transitions"]] == [S.IN_REVIEW]
    assert status.get_json()["status_description"].startswith("Document is being created")

    res = client.post(f"/api/v1/documents/{doc_id}/status",
                      json={"to_status": S.IN_REVIEW, "expected_from_status": S.DRAFT},
                      headers=auth_headers(manager))
    assert res.status_code == 200
    assert res.get_json()["document"]["version"] == 2

    # gm sees the document through the role-name entry in access_groups.
    doc = client.get(f"/api/v1/documents/{doc_id}", headers=auth_headers(gm)).get_json()
    assert doc["access_rule"] == "role_name"

    res = client.post(f"/api/v1/documents/{doc_id}/status",
                      json={"to_status": S.PENDING_APPROVAL}, headers=auth_headers(gm))
    assert res.status_code == 200

    history = client.get(f"/api/v1/documents/{doc_id}/history", headers=auth_headers(manager))
    assert [h["action"] for h in history.get_json()["history"]] == [
        "status_changed", "status_changed", "created",
    ]


def test_transition_denied_by_level(client, manager, make_document, auth_headers):
    doc = make_document(owner=manager, status=S.IN_REVIEW)
    res = client.post(f"/api/v1/documents/{doc.id}/status",
                      json={"to_status": S.PENDING_APPROVAL}, headers=auth_headers(manager))
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN_LEVEL"
    assert res.get_json()["details"] == {"reason": "role_level"}


def test_stale_transition_is_409(client, manager, make_document, auth_headers):
    doc = make_document(owner=manager, status=S.IN_REVIEW)
    res = client.post(f"/api/v1/documents/{doc.id}/status",
                      json={"to_status": S.DRAFT, "expected_from_status": S.DRAFT},
                      headers=auth_headers(manager))
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"] == {"expected": S.DRAFT, "actual": S.IN_REVIEW}


def test_unknown_transition_is_422(client, manager, make_document, auth_headers):
    doc = make_document(owner=manager)
    res = client.post(f"/api/v1/documents/{doc.id}/status",
                      json={"to_status": "SHREDDED"}, headers=auth_headers(manager))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"


def test_document_view_and_download(client, seeded, make_user, make_document, auth_headers):
    owner = make_user("manager")
    outsider = make_user("members")
    doc = make_document(owner=owner, access_groups=["Legal"])

    assert client.get(f"/api/v1/documents/{doc.id}", headers=auth_headers(outsider)).status_code == 403
    assert client.get("/api/v1/documents/404", headers=auth_headers(owner)).status_code == 404

    res = client.get(f"/api/v1/documents/{doc.id}/download", headers=auth_headers(owner))
    assert res.status_code == 200
    assert res.get_json()["can_print"] is False

    listed = client.get("/api/v1/documents", headers=auth_headers(outsider)).get_json()
    assert listed == {"documents": [], "total": 0}


def test_view_and_download_are_logged(client, manager, make_document, auth_headers):
    doc = make_document(owner=manager, status=S.PUBLISHED)
    headers = auth_headers(manager)

    assert client.get(f"/api/v1/documents/{doc.id}", headers=headers).get_json()["view_count"] == 1
    for _ in range(2):
        assert client.get(f"/api/v1/documents/{doc.id}/download", headers=headers).status_code == 200

    res = client.get(f"/api/v1/documents/{doc.id}/activity", headers=headers)
    assert [a["action"] for a in res.get_json()["activity"]] == ["DOWNLOAD", "VIEW"]
    body = client.get(f"/api/v1/documents/{doc.id}", headers=headers).get_json()
    assert (body["view_count"], body["download_count"]) == (2, 2)
    assert client.get(f"/api/v1/documents/{doc.id}/activity?action=PRINT",
                      headers=headers).status_code == 422


def test_document_patch_and_move(client, manager, make_document, auth_headers):
    parent = make_document(owner=manager, title="Parent")
    doc = make_document(owner=manager)
    headers = auth_headers(manager)

    res = client.patch(f"/api/v1/documents/{doc.id}", json={"title": "Renamed"}, headers=headers)
    assert res.get_json()["title"] == "Renamed"
    assert client.patch(f"/api/v1/documents/{doc.id}", json={"status": "PUBLISHED"},
                        headers=headers).status_code == 400

    res = client.post(f"/api/v1/documents/{doc.id}/move",
                      json={"parent_document_id": parent.id}, headers=headers)
    assert res.get_json()["hierarchy_level"] == 1
    res = client.post(f"/api/v1/documents/{parent.id}/move",
                      json={"parent_document_id": doc.id}, headers=headers)
    assert res.status_code == 422


def test_is_public_strings_rejected(client, manager, make_document, auth_headers):
    headers = auth_headers(manager)
    res = client.post("/api/v1/documents", json={"title": "T", "is_public": "false"},
                      headers=headers)
    assert res.status_code == 422
    assert res.get_json()["details"] == {"is_public": "boolean"}

    doc = make_document(owner=manager)
    res = client.patch(f"/api/v1/documents/{doc.id}", json={"is_public": "yes"}, headers=headers)
    assert res.status_code == 422

    res = client.post("/api/v1/documents", json={"title": "T", "is_public": False},
                      headers=headers)
    assert res.status_code == 201
    assert res.get_json()["is_public"] is False


# ═══════════════════════════════════════════════════════════════
# Admin
# ═══════════════════════════════════════════════════════════════

def test_admin_role_endpoints(client, admin, auth_headers):
    headers = auth_headers(admin)
    res = client.post("/api/v1/admin/roles", json={"name": "Auditor", "level": 30}, headers=headers)
    assert res.status_code == 201
    role_id = res.get_json()["id"]

    assert client.post("/api/v1/admin/roles", json={"name": "auditor"},
                       headers=headers).status_code == 409
    assert client.get(f"/api/v1/admin/roles/{role_id}", headers=headers).get_json()["name"] == "auditor"

    res = client.put("/api/v1/admin/roles/auditor/capabilities",
                     json={"capabilities": ["AUDIT_VIEW"]}, headers=headers)
    assert res.get_json() == {"capabilities": ["AUDIT_VIEW"]}

    res = client.put("/api/v1/admin/roles/auditor/permissions/pdf.download",
                     json={"granted": False}, headers=headers)
    assert res.get_json()["denied"] == ["pdf.download"]

    res = client.delete("/api/v1/admin/roles/administrator", headers=headers)
    assert res.status_code == 403
    assert res.get_json()["details"] == {"reason": "system_role"}

    assert client.delete("/api/v1/admin/roles/auditor", headers=headers).status_code == 200


def test_admin_role_level_must_be_integer(client, admin, make_user, make_document, auth_headers):
    headers = auth_headers(admin)
    res = client.post("/api/v1/admin/roles", json={"name": "auditor", "level": "senior"},
                      headers=headers)
    assert res.status_code == 422
    assert res.get_json()["details"] == {"level": "integer"}

    assert client.patch("/api/v1/admin/roles/manager", json={"level": "senior"},
                        headers=headers).status_code == 422
    assert client.post("/api/v1/admin/transitions",
                       json={"from_status": S.DRAFT, "to_status": S.REJECTED, "min_level": "high"},
                       headers=headers).status_code == 422

    manager = make_user("manager")
    doc = make_document(owner=manager)
    res = client.get(f"/api/v1/documents/{doc.id}/status", headers=auth_headers(manager))
    assert res.status_code == 200
    assert [t["to_status"] for t in res.get_json()["transitions"]] == [S.IN_REVIEW]


def test_admin_user_endpoints(client, admin, auth_headers):
    headers = auth_headers(admin)
    res = client.post("/api/v1/admin/users",
                      json={"email": "erin@docguard.io", "roles": ["viewer"]}, headers=headers)
    assert res.status_code == 201
    user_id = res.get_json()["id"]

    assert client.post("/api/v1/admin/users", json={"email": "bad"},
                       headers=headers).status_code == 422

    res = client.post(f"/api/v1/admin/users/{user_id}/roles", json={"role": "org_gm"}, headers=headers)
    assert sorted(res.get_json()["roles"]) == ["org_gm", "viewer"]

    res = client.delete(f"/api/v1/admin/users/{user_id}/roles/viewer", headers=headers)
    assert res.get_json()["roles"] == ["org_gm"]

    res = client.post("/api/v1/admin/roles/viewer/users", json={"user_ids": [user_id]},
                      headers=headers)
    assert res.get_json()["reactivated"] == [user_id]

    res = client.post(f"/api/v1/admin/users/{user_id}/deactivate", headers=headers)
    assert res.get_json()["is_active"] is False

    audit = client.get("/api/v1/admin/audit?entity_type=user_role", headers=headers).get_json()
    assert audit["items"]
    assert audit["items"][0]["actor_user_id"] == admin.id

    res = client.get("/api/v1/admin/audit?entity_type=users", headers=headers)
    assert res.status_code == 400
    assert "user_role" in res.get_json()["details"]["entity_type"]


def test_admin_transition_endpoints(client, admin, auth_headers):
    headers = auth_headers(admin)
    res = client.post("/api/v1/admin/transitions",
                      json={"from_status": S.DRAFT, "to_status": S.REJECTED,
                            "min_level": 80, "required_permission": "documents.approve",
                            "required_roles": ["kadiv"]},
                      headers=headers)
    assert res.status_code == 201
    edge_id = res.get_json()["id"]

    res = client.patch(f"/api/v1/admin/transitions/{edge_id}", json={"is_active": False},
                       headers=headers)
    assert res.get_json()["is_active"] is False

    listed = client.get("/api/v1/admin/transitions", headers=headers).get_json()["transitions"]
    assert edge_id not in [t["id"] for t in listed]

    assert client.post("/api/v1/admin/transitions/seed", headers=headers).get_json() == {"created": 0}
    assert client.post("/api/v1/admin/workflow/migrate-pending-review",
                       headers=headers).get_json()["documents"] == 0
    assert client.get("/api/v1/admin/consistency", headers=headers).get_json()["ok"] is True


def test_workflow_admin_capability_is_enough(client, seeded, make_user, auth_headers):
    ppd = make_user("ppd")
    headers = auth_headers(ppd)
    assert client.get("/api/v1/admin/transitions", headers=headers).status_code == 200
    assert client.get("/api/v1/admin/roles", headers=headers).status_code == 403
    assert client.post("/api/v1/admin/workflow/migrate-pending-review",
                       headers=headers).status_code == 403


def test_unknown_route_json_404(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"

import io

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.precast.db import session_scope
from app.precast.models import AuditEvent, Permission, Role, User
from app.precast.modules.document_management.models import (
    Document,
    DocumentAccessLog,
    DocumentApproval,
    DocumentComment,
    DocumentShare,
    DocumentVersion,
)

ALL_PERMS = (
    "docs.view",
    "docs.create",
    "docs.edit",
    "docs.approve",
    "docs.share",
    "docs.comment",
    "docs.download",
    "folders.manage",
    "workflows.manage",
    "templates.manage",
)


@pytest.fixture()
def client(app):
    with session_scope(app) as s:
        perms = {k: Permission(key=k, name=k) for k in ALL_PERMS}
        admin = Role(key="admin", name="Administrator")
        admin.permissions.extend(perms.values())
        approver = Role(key="engineering", name="Engineering")
        approver.permissions.extend([perms["docs.view"], perms["docs.approve"]])
        viewer = Role(key="site", name="Site crew")
        viewer.permissions.append(perms["docs.view"])
        sales = Role(key="sales", name="Sales")
        sales.permissions.extend(
            perms[k] for k in ("docs.view", "docs.edit", "docs.share", "docs.comment", "docs.approve", "docs.download")
        )

        users = [
            User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True),
            User(email="bob@example.com", password_hash=generate_password_hash("pw"), is_active=True),
            User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True),
            User(email="sales@example.com", password_hash=generate_password_hash("pw"), is_active=True),
        ]
        users[0].roles.append(admin)
        users[1].roles.append(approver)
        users[2].roles.append(viewer)
        users[3].roles.append(sales)
        s.add_all(list(perms.values()) + [admin, approver, viewer, sales] + users)

    return app.test_client()


def _login(client, email="admin@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrf_token"]}


def test_requires_login(client):
    r = client.get("/api/documents/")
    assert r.status_code == 401
    assert r.json["error"] == "unauthorized"


def test_csrf_required_for_writes(client):
    _login(client)
    r = client.post("/api/documents/", json={"title": "No token"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf"


def test_create_get_and_list(client):
    h = _login(client)
    r = client.post(
        "/api/documents/",
        json={"title": "Stair unit ST-4", "type": "DRAWING", "tags": ["stairs"], "access_level": "INTERNAL"},
        headers=h,
    )
    assert r.status_code == 201
    doc = r.json
    assert doc["version"] == "1.0"
    assert doc["created_by"] == "admin@example.com"
    assert [v["status"] for v in doc["versions"]] == ["ACTIVE"]

    r = client.get(f"/api/documents/{doc['id']}")
    assert r.status_code == 200
    assert r.json["title"] == "Stair unit ST-4"

    r = client.get("/api/documents/?tags=stairs&type=DRAWING")
    assert [d["id"] for d in r.json["documents"]] == [doc["id"]]

    with session_scope(client.application) as s:
        views = s.execute(select(DocumentAccessLog).where(DocumentAccessLog.action == "VIEW")).scalars().all()
        assert [v.user_id for v in views] == ["admin@example.com"]


def test_upload_new_version_and_download(client):
    h = _login(client)
    r = client.post(
        "/api/documents/",
        data={"title": "Column C-7", "tags": "column,level-1", "file": (io.BytesIO(b"rev one"), "c7.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 201
    doc_id = r.json["id"]
    assert r.json["file_name"] == "c7.pdf"
    assert r.json["tags"] == ["column", "level-1"]

    r = client.patch(
        f"/api/documents/{doc_id}",
        data={"change_description": "Corbel added", "file": (io.BytesIO(b"rev two"), "c7.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["version"] == "1.1"
    versions = r.json["versions"]
    assert [(v["version"], v["status"]) for v in versions] == [("1.1", "ACTIVE"), ("1.0", "SUPERSEDED")]
    assert versions[0]["change_description"] == "Corbel added"

    r = client.get(f"/api/documents/versions/{versions[1]['id']}/download")
    assert r.status_code == 200
    assert r.data == b"rev one"

    r = client.get(f"/api/documents/{doc_id}/versions")
    assert len(r.json["versions"]) == 2


def test_approval_round_trip(client):
    h = _login(client)
    r = client.post(
        "/api/documents/workflows",
        json={
            "name": "Shop drawing review",
            "steps": [{"name": "Engineering", "approver_ids": ["bob@example.com"]}],
        },
        headers=h,
    )
    assert r.status_code == 201
    wf_id = r.json["id"]
    assert r.json["steps"][0]["id"] == "step-1"

    doc_id = client.post("/api/documents/", json={"title": "Beam B-2"}, headers=h).json["id"]
    r = client.post(f"/api/documents/{doc_id}/approvals", json={"workflow_id": wf_id}, headers=h)
    assert r.status_code == 201
    approval_id = r.json["id"]

    r = client.post(f"/api/documents/{doc_id}/approvals", json={"workflow_id": wf_id}, headers=h)
    assert r.status_code == 409
    assert r.json["error"] == "approval_already_active"

    # Admin can approve in general but is not the assigned approver.
    r = client.post(f"/api/documents/approvals/{approval_id}/steps/0", json={"decision": "APPROVED"}, headers=h)
    assert r.status_code == 403
    assert r.json["error"] == "not_authorized_approver"

    client.get("/auth/logout")
    hb = _login(client, "bob@example.com")
    r = client.post(
        f"/api/documents/approvals/{approval_id}/steps/0",
        json={"decision": "approved", "comments": "Looks good"},
        headers=hb,
    )
    assert r.status_code == 200
    assert r.json["status"] == "APPROVED"

    r = client.get(f"/api/documents/{doc_id}")
    assert r.json["status"] == "ACTIVE"


def test_rbac_denies_missing_permission(client):
    h = _login(client, "viewer@example.com")
    r = client.post("/api/documents/", json={"title": "Not allowed"}, headers=h)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "docs.create"


def test_restricted_document_hidden_from_other_groups(client):
    h = _login(client)
    doc_id = client.post(
        "/api/documents/",
        json={"title": "Pricing", "access_level": "CONFIDENTIAL", "access_groups": ["admin"]},
        headers=h,
    ).json["id"]
    client.get("/auth/logout")

    _login(client, "viewer@example.com")
    assert client.get(f"/api/documents/{doc_id}").status_code == 403
    assert client.get("/api/documents/").json["documents"] == []


def test_errors_render_as_json(client):
    h = _login(client)
    r = client.get("/api/documents/9999")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"

    r = client.post("/api/documents/", json={"title": "Orphan", "folder_id": 77}, headers=h)
    assert r.status_code == 422
    assert r.json["error"] == "reference_not_found"

    r = client.post("/api/documents/", json={"title": "Bad", "project_id": "abc"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "invalid_document"

    with session_scope(client.application) as s:
        assert s.execute(select(Document)).scalars().all() == []


def test_public_share_link(client):
    h = _login(client)
    r = client.post(
        "/api/documents/",
        data={"title": "Erection sequence", "file": (io.BytesIO(b"sequence"), "seq.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    doc_id = r.json["id"]
    r = client.post(
        f"/api/documents/{doc_id}/shares",
        json={"share_type": "PUBLIC", "password": "crane"},
        headers=h,
    )
    assert r.status_code == 201
    link = r.json["share_link"]
    assert link.startswith(f"/share/{doc_id}/")
    assert r.json["has_password"] is True
    share_id = r.json["id"]

    client.get("/auth/logout")
    anon = client.application.test_client()
    assert anon.get(link).status_code == 403
    r = anon.get(link, headers={"X-Share-Password": "crane"})
    assert r.status_code == 200
    assert r.json["document"]["title"] == "Erection sequence"
    assert r.json["share"]["access_count"] == 1

    r = anon.get(f"{link}?password=crane&download=1")
    assert r.status_code == 200
    assert r.data == b"sequence"

    h = _login(client)
    assert client.post(f"/api/documents/shares/{share_id}/revoke", json={}, headers=h).status_code == 200
    assert anon.get(link, headers={"X-Share-Password": "crane"}).status_code == 404


def test_folders_and_comments(client):
    h = _login(client)
    r = client.post("/api/documents/folders", json={"name": "Projects"}, headers=h)
    assert r.status_code == 201
    parent = r.json
    r = client.post("/api/documents/folders", json={"name": "Tower", "parent_id": parent["id"]}, headers=h)
    assert r.json["path"] == "/Projects"

    r = client.get(f"/api/documents/folders?parent_id={parent['id']}")
    assert [f["name"] for f in r.json["folders"]] == ["Tower"]

    doc_id = client.post("/api/documents/", json={"title": "Panel P-1", "folder_id": parent["id"]}, headers=h).json["id"]
    r = client.post(f"/api/documents/{doc_id}/comments", json={"content": "Lifting loop?", "page_number": 3}, headers=h)
    assert r.status_code == 201
    assert r.json["document_version"] == "1.0"


def test_mutations_are_audited(client):
    h = _login(client)
    doc_id = client.post("/api/documents/", json={"title": "Audit me"}, headers=h).json["id"]
    client.patch(f"/api/documents/{doc_id}", json={"title": "Audited"}, headers=h)

    with session_scope(client.application) as s:
        events = s.execute(
            select(AuditEvent).where(AuditEvent.entity_type == "Document").order_by(AuditEvent.id)
        ).scalars().all()
        assert [e.action for e in events] == ["doc.create", "doc.update"]
        assert all(e.request_id for e in events)
        assert all(e.actor == "admin@example.com" for e in events)
        assert s.execute(select(DocumentVersion)).scalars().all()[0].document_id == doc_id


def test_hidden_document_cannot_be_changed_through_side_routes(client):
    h = _login(client)
    r = client.post(
        "/api/documents/",
        data={
            "title": "Bid pricing",
            "access_level": "CONFIDENTIAL",
            "access_groups": "admin",
            "file": (io.BytesIO(b"prices"), "bid.pdf"),
        },
        content_type="multipart/form-data",
        headers=h,
    )
    doc_id = r.json["id"]
    other_id = client.post(
        "/api/documents/",
        json={"title": "Margin sheet", "access_level": "CONFIDENTIAL", "access_groups": ["admin"]},
        headers=h,
    ).json["id"]
    wf_id = client.post(
        "/api/documents/workflows",
        json={"name": "Pricing sign-off", "steps": [{"name": "Sales", "approver_ids": ["sales@example.com"]}]},
        headers=h,
    ).json["id"]
    approval_id = client.post(f"/api/documents/{doc_id}/approvals", json={"workflow_id": wf_id}, headers=h).json["id"]
    share_id = client.post(f"/api/documents/{doc_id}/shares", json={"share_type": "PUBLIC"}, headers=h).json["id"]
    client.get("/auth/logout")

    hs = _login(client, "sales@example.com")
    attempts = [
        client.patch(f"/api/documents/{doc_id}", json={"title": "Leaked"}, headers=hs),
        client.post(f"/api/documents/{doc_id}/shares", json={"share_type": "PUBLIC"}, headers=hs),
        client.post(f"/api/documents/{doc_id}/comments", json={"content": "hi"}, headers=hs),
        client.get(f"/api/documents/{doc_id}/comments"),
        client.post(f"/api/documents/{other_id}/approvals", json={"workflow_id": wf_id}, headers=hs),
        client.post(f"/api/documents/approvals/{approval_id}/steps/0", json={"decision": "APPROVED"}, headers=hs),
        client.post(f"/api/documents/approvals/{approval_id}/cancel", json={}, headers=hs),
        client.post(f"/api/documents/shares/{share_id}/revoke", json={}, headers=hs),
    ]
    assert [r.status_code for r in attempts] == [403] * len(attempts)
    assert all(r.json["missing_permission"].startswith("document:") for r in attempts)

    r = client.post("/api/documents/approvals/9999/cancel", json={}, headers=hs)
    assert r.status_code == 404

    with session_scope(client.application) as s:
        assert s.get(Document, doc_id).title == "Bid pricing"
        assert s.get(Document, other_id).status == "ACTIVE"
        assert [sh.id for sh in s.execute(select(DocumentShare)).scalars()] == [share_id]
        assert s.get(DocumentShare, share_id).status == "ACTIVE"
        assert s.get(DocumentApproval, approval_id).status == "PENDING"
        assert s.execute(select(DocumentComment)).scalars().all() == []


def test_non_string_fields_are_rejected(client):
    h = _login(client)
    r = client.post("/api/documents/", json={"title": 5}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "invalid_document"
    assert "title" in r.json["message"]

    doc_id = client.post("/api/documents/", json={"title": "Slab S-3"}, headers=h).json["id"]
    r = client.post(f"/api/documents/{doc_id}/comments", json={"content": ["not", "text"]}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "invalid_document"

    r = client.post(f"/api/documents/{doc_id}/shares", json={"share_type": "PUBLIC", "password": 1234}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "invalid_document"

    r = client.patch(f"/api/documents/{doc_id}", json={"access_level": {"level": "PUBLIC"}}, headers=h)
    assert r.status_code == 400

    with session_scope(client.application) as s:
        assert [d.title for d in s.execute(select(Document)).scalars()] == ["Slab S-3"]
        assert s.get(Document, doc_id).access_level == "INTERNAL"


def test_comments_listing(client):
    h = _login(client)
    doc_id = client.post("/api/documents/", json={"title": "Wall W-9"}, headers=h).json["id"]
    first = client.post(f"/api/documents/{doc_id}/comments", json={"content": "Check cover"}, headers=h).json
    second = client.post(f"/api/documents/{doc_id}/comments", json={"content": "Cover ok"}, headers=h).json
    with session_scope(client.application) as s:
        s.get(DocumentComment, first["id"]).status = "DELETED"
    third = client.post(f"/api/documents/{doc_id}/comments", json={"content": "Ship it"}, headers=h).json

    r = client.get(f"/api/documents/{doc_id}/comments")
    assert r.status_code == 200
    assert [c["id"] for c in r.json["comments"]] == [third["id"], second["id"]]

    r = client.get(f"/api/documents/{doc_id}?include_comments=1")
    assert [c["content"] for c in r.json["comments"]] == ["Ship it", "Cover ok"]
    assert "comments" not in client.get(f"/api/documents/{doc_id}").json

    assert client.get("/api/documents/9999/comments").status_code == 404


def test_templates(client):
    h = _login(client)
    r = client.post(
        "/api/documents/templates",
        data={
            "name": "Shop drawing",
            "type": "DRAWING",
            "category": "precast",
            "default_tags": "drawing,shop",
            "file": (io.BytesIO(b"blank"), "shop.dwg"),
        },
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["file_name"] == "shop.dwg"
    assert r.json["default_tags"] == ["drawing", "shop"]
    assert r.json["file_url"].endswith(f"templates/{r.json['id']}/shop.dwg")

    client.post("/api/documents/templates", json={"name": "Anchor schedule", "type": "DRAWING"}, headers=h)
    client.post("/api/documents/templates", json={"name": "Mix design", "type": "SPEC", "status": "INACTIVE"}, headers=h)

    r = client.get("/api/documents/templates?type=DRAWING")
    assert [t["name"] for t in r.json["templates"]] == ["Anchor schedule", "Shop drawing"]
    r = client.get("/api/documents/templates?status=INACTIVE")
    assert [t["name"] for t in r.json["templates"]] == ["Mix design"]

    r = client.post("/api/documents/templates", json={"name": ""}, headers=h)
    assert r.status_code == 400
    client.get("/auth/logout")

    hv = _login(client, "viewer@example.com")
    assert len(client.get("/api/documents/templates").json["templates"]) == 3
    r = client.post("/api/documents/templates", json={"name": "Nope"}, headers=hv)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "templates.manage"

from __future__ import annotations

from urllib.parse import urlsplit

from conftest import CUSTOMER_1, CUSTOMER_2, PORTAL_1, PORTAL_2, TEAM_A, issue_token, portal_headers, team_headers

BRIEF_PATH = [TEAM_A, "customers", CUSTOMER_1, "portal-requests", "brief.pdf"]


def _local(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


def _seed_object(client, service, path: str, content: bytes) -> None:
    slot = service.storage.create_signed_upload_url(path=path)
    assert client.put(_local(slot["url"]), content=content).status_code == 201


def _attachment(path: list[str], name: str = "brief.pdf") -> dict[str, object]:
    return {"name": name, "path": path, "size": 1024, "type": "application/pdf"}


def _create_request(client, title: str, **extra) -> dict:
    resp = client.post(f"/api/v1/portal/{PORTAL_1}/requests", json={"title": title, **extra}, headers=portal_headers())
    assert resp.status_code == 201
    return resp.json()


def test_verify_accepts_case_insensitive_customer_email(client):
    resp = client.post(f"/api/v1/portal/{PORTAL_1}/verify", headers=portal_headers("  CLIENT@example.COM "))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["customer_name"] == "Acme Co"


def test_verify_rejects_other_email(client):
    resp = client.post(f"/api/v1/portal/{PORTAL_1}/verify", headers=portal_headers("someone@else.test"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "PORTAL_UNAUTHORIZED"


def test_disabled_and_unknown_portals_are_not_found(client):
    for portal_id in (PORTAL_2, "missing0"):
        resp = client.get(f"/api/v1/portal/{portal_id}/requests", headers=portal_headers("ops@globex.test"))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "PORTAL_NOT_FOUND"


def test_portal_calls_require_session_with_email(client):
    resp = client.get(f"/api/v1/portal/{PORTAL_1}/requests")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    no_email = {"Authorization": f"Bearer {issue_token(sub='client_1')}"}
    resp = client.get(f"/api/v1/portal/{PORTAL_1}/requests", headers=no_email)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


def test_create_request_appends_to_backlog_and_drops_foreign_attachments(client, service):
    _seed_object(client, service, "/".join(BRIEF_PATH), b"%PDF-1.7")
    foreign = [TEAM_A, "customers", CUSTOMER_2, "portal-requests", "secret.pdf"]

    first = _create_request(
        client,
        "  Landing page refresh  ",
        details="Swap hero image",
        attachments=[_attachment(BRIEF_PATH), _attachment(foreign, "secret.pdf")],
    )
    second = _create_request(client, "Pricing table")

    assert first["data"]["title"] == "Landing page refresh"
    assert first["data"]["status"] == "backlog"
    assert first["data"]["priority"] == 1
    assert first["data"]["resources"] == []
    assert first["meta"]["dropped_attachments"] == 1
    assert [a["name"] for a in first["data"]["attachments"]] == ["brief.pdf"]
    assert first["data"]["attachments"][0]["download_url"].startswith(
        f"http://files.test/storage/objects/vault/{TEAM_A}/customers/{CUSTOMER_1}/portal-requests/brief.pdf?"
    )
    assert second["data"]["priority"] == 2
    assert second["meta"]["dropped_attachments"] == 0


def test_missing_attachment_object_yields_null_link_not_failure(client):
    body = _create_request(client, "Logo tweaks", attachments=[_attachment(BRIEF_PATH)])
    assert body["data"]["attachments"][0]["download_url"] is None

    resp = client.get(f"/api/v1/portal/{PORTAL_1}/requests", headers=portal_headers())
    assert resp.status_code == 200
    assert resp.json()["data"]["requests"][0]["attachments"][0]["download_url"] is None


def test_create_request_validates_title(client):
    resp = client.post(f"/api/v1/portal/{PORTAL_1}/requests", json={"title": " a "}, headers=portal_headers())
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_reorder_places_unlisted_backlog_items_last(client):
    a = _create_request(client, "Request A")["data"]["id"]
    b = _create_request(client, "Request B")["data"]["id"]
    c = _create_request(client, "Request C")["data"]["id"]

    resp = client.post(
        f"/api/v1/portal/{PORTAL_1}/requests/reorder",
        json={"request_ids": [c, a]},
        headers=portal_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["request_ids"] == [c, a, b]

    listed = client.get(f"/api/v1/portal/{PORTAL_1}/requests", headers=portal_headers()).json()["data"]
    assert [r["id"] for r in listed["backlog"]] == [c, a, b]
    assert [r["priority"] for r in listed["backlog"]] == [1, 2, 3]


def test_reorder_rejects_malformed_ids(client):
    resp = client.post(
        f"/api/v1/portal/{PORTAL_1}/requests/reorder",
        json={"request_ids": ["not-a-uuid"]},
        headers=portal_headers(),
    )
    assert resp.status_code == 400


def test_request_view_separates_active_request_from_backlog(client):
    a = _create_request(client, "Request A")["data"]["id"]
    b = _create_request(client, "Request B")["data"]["id"]
    resp = client.patch(
        f"/api/v1/customers/{CUSTOMER_1}/portal/requests/{a}",
        json={"status": "in_progress"},
        headers=team_headers(),
    )
    assert resp.status_code == 200

    view = client.get(f"/api/v1/portal/{PORTAL_1}/requests", headers=portal_headers()).json()["data"]
    assert view["active_request"]["id"] == a
    assert [r["id"] for r in view["backlog"]] == [b]
    assert len(view["requests"]) == 2


def test_messages_are_returned_in_chronological_order(client):
    for text in ("first", "second", "third"):
        resp = client.post(
            f"/api/v1/portal/{PORTAL_1}/messages",
            json={"message": f"  {text}  "},
            headers=portal_headers(),
        )
        assert resp.status_code == 201

    resp = client.get(f"/api/v1/portal/{PORTAL_1}/messages", headers=portal_headers())
    assert resp.status_code == 200
    messages = resp.json()["data"]["messages"]
    assert [m["message"] for m in messages] == ["first", "second", "third"]
    assert {m["sender_type"] for m in messages} == {"client"}
    assert messages[0]["sender_name"] == "Acme Co"
    assert messages[0]["sender_user_id"] is None


def test_message_with_malformed_request_id_is_validation_error(client):
    resp = client.post(
        f"/api/v1/portal/{PORTAL_1}/messages",
        json={"message": "hello", "request_id": "abc"},
        headers=portal_headers(),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_message_limit_above_maximum_is_rejected(client):
    resp = client.get(f"/api/v1/portal/{PORTAL_1}/messages?limit=500", headers=portal_headers())
    assert resp.status_code == 400


def test_upload_slot_targets_customer_folder(client):
    resp = client.post(
        f"/api/v1/portal/{PORTAL_1}/attachments/upload",
        json={"file_name": "../brief v2.pdf", "content_type": "application/pdf", "scope": "message"},
        headers=portal_headers(),
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["path"][:4] == [TEAM_A, "customers", CUSTOMER_1, "portal-messages"]
    assert data["path"][4].endswith("-.._brief v2.pdf")
    assert data["token"]
    assert "/objects/upload/vault/" in data["url"]


def test_assets_list_customer_documents_with_signed_links(client, service):
    tokens = [TEAM_A, "customers", CUSTOMER_1, "handover.zip"]
    _seed_object(client, service, "/".join(tokens), b"PK")
    service.assets.upsert(
        document={
            "id": "d1",
            "team_id": TEAM_A,
            "object_id": CUSTOMER_1,
            "name": "handover.zip",
            "title": "Handover",
            "path_tokens": tokens,
            "created_at": "2026-01-02T00:00:00+00:00",
        }
    )
    service.assets.upsert(
        document={
            "id": "d2",
            "team_id": TEAM_A,
            "object_id": CUSTOMER_1,
            "name": "folder/.folderPlaceholder",
            "path_tokens": [TEAM_A, "customers", CUSTOMER_1, "folder", ".folderPlaceholder"],
            "created_at": "2026-01-03T00:00:00+00:00",
        }
    )
    service.assets.upsert(
        document={
            "id": "d3",
            "team_id": TEAM_A,
            "object_id": CUSTOMER_2,
            "name": "other.zip",
            "path_tokens": [TEAM_A, "customers", CUSTOMER_2, "other.zip"],
            "created_at": "2026-01-04T00:00:00+00:00",
        }
    )

    resp = client.get(f"/api/v1/portal/{PORTAL_1}/assets", headers=portal_headers())
    assert resp.status_code == 200
    assets = resp.json()["data"]["data"]
    assert [a["id"] for a in assets] == ["d1"]
    assert assets[0]["file_name"] == "handover.zip"
    assert assets[0]["download_url"].startswith("http://files.test/storage/objects/vault/")

    download = client.get(_local(assets[0]["download_url"]))
    assert download.status_code == 200
    assert download.content == b"PK"
    assert download.headers["content-type"] == "application/zip"
    assert download.headers["content-disposition"] == "attachment; filename*=UTF-8''handover.zip"


def test_uploaded_attachment_is_downloadable_through_returned_links(client):
    slot = client.post(
        f"/api/v1/portal/{PORTAL_1}/attachments/upload",
        json={"file_name": "brief v2.pdf", "content_type": "application/pdf"},
        headers=portal_headers(),
    ).json()["data"]
    uploaded = client.put(_local(slot["url"]), content=b"%PDF-1.7")
    assert uploaded.status_code == 201
    assert uploaded.json()["data"]["path"] == "/".join(slot["path"])

    body = _create_request(client, "Brief review", attachments=[_attachment(slot["path"], "brief v2.pdf")])
    link = body["data"]["attachments"][0]["download_url"]
    resp = client.get(_local(link))
    assert resp.status_code == 200
    assert resp.content == b"%PDF-1.7"
    assert resp.headers["content-type"] == "application/pdf"


def test_upload_link_writes_once(client):
    slot = client.post(
        f"/api/v1/portal/{PORTAL_1}/attachments/upload",
        json={"file_name": "logo.png", "content_type": "image/png", "scope": "message"},
        headers=portal_headers(),
    ).json()["data"]
    assert client.put(_local(slot["url"]), content=b"png").status_code == 201

    again = client.put(_local(slot["url"]), content=b"other")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "STORAGE_OBJECT_EXISTS"


def test_storage_links_reject_tampered_or_mismatched_tokens(client, service):
    _seed_object(client, service, "/".join(BRIEF_PATH), b"%PDF-1.7")
    _seed_object(client, service, f"{TEAM_A}/customers/{CUSTOMER_2}/portal-requests/secret.pdf", b"secret")
    link = urlsplit(service.storage.create_signed_download_url(path="/".join(BRIEF_PATH), expires_in=60))

    tampered = client.get(f"{link.path}?token=abc.def")
    assert tampered.status_code == 403
    assert tampered.json()["error"]["code"] == "STORAGE_LINK_INVALID"

    other_key = link.path.replace(f"{CUSTOMER_1}/portal-requests/brief.pdf", f"{CUSTOMER_2}/portal-requests/secret.pdf")
    resp = client.get(f"{other_key}?{link.query}")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "STORAGE_LINK_INVALID"

    upload_with_download_token = client.put(
        f"/storage/objects/upload/vault/{TEAM_A}/new.pdf?{link.query}",
        content=b"x",
    )
    assert upload_with_download_token.status_code == 403

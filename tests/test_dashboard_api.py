from __future__ import annotations

import logging

from conftest import CUSTOMER_1, CUSTOMER_2, CUSTOMER_B, PORTAL_1, TEAM_B, issue_token, portal_headers, team_headers


def _requests_url(customer_id: str = CUSTOMER_1) -> str:
    return f"/api/v1/customers/{customer_id}/portal/requests"


def _seed_requests(service, *titles: str) -> list[str]:
    return [
        service.requests.create(team_id="team_a", customer_id=CUSTOMER_1, title=title)["id"]
        for title in titles
    ]


def test_dashboard_requires_team_scope(client):
    resp = client.get(_requests_url(), headers=portal_headers())
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"

    resp = client.get(_requests_url())
    assert resp.status_code == 401


def test_dashboard_cannot_reach_other_team_customer(client):
    for customer_id in (CUSTOMER_B, "not-a-uuid"):
        resp = client.get(_requests_url(customer_id), headers=team_headers())
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "CUSTOMER_NOT_FOUND"

    resp = client.get(_requests_url(CUSTOMER_B), headers=team_headers(TEAM_B))
    assert resp.status_code == 200
    assert resp.json()["data"] == []


def test_second_active_request_conflicts_and_first_is_unchanged(client, service):
    first, second = _seed_requests(service, "Request A", "Request B")

    resp = client.patch(f"{_requests_url()}/{first}", json={"status": "in_progress"}, headers=team_headers())
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "in_progress"

    resp = client.patch(f"{_requests_url()}/{second}", json={"status": "in_qa"}, headers=team_headers())
    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "REQUEST_ACTIVE_CONFLICT"
    assert error["class"] == "business_rule"
    assert error["retryable"] is False

    listed = client.get(_requests_url(), headers=team_headers()).json()["data"]
    statuses = {r["id"]: r["status"] for r in listed}
    assert statuses == {first: "in_progress", second: "backlog"}


def test_completing_request_frees_active_slot(client, service):
    first, second = _seed_requests(service, "Request A", "Request B")
    client.patch(f"{_requests_url()}/{first}", json={"status": "awaiting_review"}, headers=team_headers())

    resp = client.patch(f"{_requests_url()}/{first}", json={"status": "completed"}, headers=team_headers())
    assert resp.status_code == 200
    assert resp.json()["data"]["completed_at"]

    resp = client.patch(f"{_requests_url()}/{second}", json={"status": "in_progress"}, headers=team_headers())
    assert resp.status_code == 200

    resp = client.patch(f"{_requests_url()}/{first}", json={"status": "backlog"}, headers=team_headers())
    assert resp.status_code == 200
    assert resp.json()["data"]["completed_at"] is None


def test_resources_are_normalized_and_drops_reported(client, service):
    (request_id,) = _seed_requests(service, "Request A")
    resp = client.patch(
        f"{_requests_url()}/{request_id}",
        json={
            "resources": [
                {"label": "  Staging  ", "url": " https://staging.acme.test "},
                {"label": "Bad", "url": "ftp://files.acme.test"},
                {"label": "", "url": "https://x.test"},
                {"label": "Figma"},
            ]
        },
        headers=team_headers(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["data"]["resources"] == [{"label": "Staging", "url": "https://staging.acme.test"}]
    assert body["data"]["status"] == "backlog"
    assert body["meta"]["dropped_resources"] == 3


def test_non_object_resource_entries_are_dropped_not_rejected(client, service):
    (request_id,) = _seed_requests(service, "Request A")
    resp = client.patch(
        f"{_requests_url()}/{request_id}",
        json={"resources": [{"label": "Figma", "url": "https://figma.com/x"}, "https://bare", None, 7]},
        headers=team_headers(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["data"]["resources"] == [{"label": "Figma", "url": "https://figma.com/x"}]
    assert body["meta"]["dropped_resources"] == 3


def test_legacy_staging_url_is_exposed_as_resource(client, service):
    (request_id,) = _seed_requests(service, "Old request")
    row = service.requests._requests[request_id]
    row["resources"] = None
    row["staging_url"] = "https://old-staging.acme.test"

    listed = client.get(_requests_url(), headers=team_headers()).json()["data"]
    assert listed[0]["resources"] == [{"label": "Live Staging", "url": "https://old-staging.acme.test"}]
    assert "staging_url" not in listed[0]


def test_update_requires_status_or_resources(client, service):
    (request_id,) = _seed_requests(service, "Request A")
    resp = client.patch(f"{_requests_url()}/{request_id}", json={}, headers=team_headers())
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    resp = client.patch(f"{_requests_url()}/{request_id}", json={"status": "archived"}, headers=team_headers())
    assert resp.status_code == 400


def test_update_unknown_request_is_not_found(client):
    resp = client.patch(
        f"{_requests_url()}/99999999-9999-4999-8999-999999999999",
        json={"status": "in_progress"},
        headers=team_headers(),
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQUEST_NOT_FOUND"


def test_dashboard_messages_are_capped_and_chronological(client, service):
    for i in range(150):
        service.messages.create(team_id="team_a", customer_id=CUSTOMER_1, sender_type="client", message=f"m{i}")

    resp = client.get(f"/api/v1/customers/{CUSTOMER_1}/portal/messages", headers=team_headers())
    assert resp.status_code == 200
    messages = resp.json()["data"]["messages"]
    assert len(messages) == 100
    assert messages[0]["message"] == "m50"
    assert messages[-1]["message"] == "m149"


def test_team_message_records_provider_sender(client):
    resp = client.post(
        f"/api/v1/customers/{CUSTOMER_1}/portal/messages",
        json={"message": "Deployed to staging"},
        headers=team_headers(name="Dana"),
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["sender_type"] == "freelancer"
    assert data["sender_user_id"] == "owner_1"
    assert data["sender_name"] == "Dana"

    portal_view = client.get(f"/api/v1/portal/{PORTAL_1}/messages", headers=portal_headers()).json()["data"]
    assert [m["message"] for m in portal_view["messages"]] == ["Deployed to staging"]


def test_toggle_assigns_portal_id_once(client, service):
    resp = client.post(f"/api/v1/customers/{CUSTOMER_2}/portal/toggle", json={"enabled": True}, headers=team_headers())
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["portal_enabled"] is True
    assert data["portal_id"] == "portal02"

    headers = {"Authorization": f"Bearer {issue_token(sub='client_2', email='ops@globex.test')}"}
    resp = client.post("/api/v1/portal/portal02/verify", headers=headers)
    assert resp.status_code == 200

    resp = client.post(f"/api/v1/customers/{CUSTOMER_2}/portal/toggle", json={"enabled": False}, headers=team_headers())
    assert resp.json()["data"]["portal_enabled"] is False
    resp = client.post("/api/v1/portal/portal02/verify", headers=headers)
    assert resp.status_code == 404


def test_toggle_generates_portal_id_for_new_customer(client):
    resp = client.post(
        f"/api/v1/customers/{CUSTOMER_B}/portal/toggle",
        json={"enabled": True},
        headers=team_headers(TEAM_B),
    )
    assert resp.status_code == 200
    portal_id = resp.json()["data"]["portal_id"]
    assert isinstance(portal_id, str) and len(portal_id) == 8


def test_toggle_retries_when_generated_portal_id_collides(client, monkeypatch, caplog):
    generated = iter(["portal01", "fresh123"])
    monkeypatch.setattr("portal.service.secrets.token_urlsafe", lambda nbytes: next(generated))
    with caplog.at_level(logging.WARNING, logger="portal.service"):
        resp = client.post(
            f"/api/v1/customers/{CUSTOMER_B}/portal/toggle",
            json={"enabled": True},
            headers=team_headers(TEAM_B),
        )
    assert resp.status_code == 200
    assert resp.json()["data"]["portal_id"] == "fresh123"
    assert "portal_id_collision" in caplog.text


def test_toggle_reports_conflict_when_portal_ids_keep_colliding(client, service, monkeypatch):
    monkeypatch.setattr("portal.service.secrets.token_urlsafe", lambda nbytes: PORTAL_1)
    resp = client.post(
        f"/api/v1/customers/{CUSTOMER_B}/portal/toggle",
        json={"enabled": True},
        headers=team_headers(TEAM_B),
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "PORTAL_ID_CONFLICT"
    assert service.customers.get(team_id=TEAM_B, customer_id=CUSTOMER_B)["portal_enabled"] is False

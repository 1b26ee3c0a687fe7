from portal.errors import ApiError


def test_health_endpoint(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}


def test_api_health_endpoint_alias(client):
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}


def test_ready_endpoint_reports_backend(client):
    resp = client.get("/api/v1/health/ready")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "ready", "store_backend": "memory", "schema": "n/a"}


def test_ready_endpoint_surfaces_pending_migrations(client, service):
    def _behind():
        raise ApiError(
            code="STORAGE_SCHEMA_MISSING",
            message="Database schema is behind. Run database migrations: 0031_add_client_request_resources.",
            error_class="infrastructure",
            retryable=False,
            http_status=500,
        )

    service._schema_check = _behind
    resp = client.get("/api/v1/health/ready")
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "STORAGE_SCHEMA_MISSING"
    assert "0031_add_client_request_resources" in error["message"]

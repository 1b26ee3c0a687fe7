import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.main import create_app
from portal.service import create_service_from_env

JWT_SECRET = "jwt_test_secret_portal_32bytes_min_for_sha256"
TEAM_A = "team_a"
TEAM_B = "team_b"
CUSTOMER_1 = "11111111-1111-4111-8111-111111111111"
CUSTOMER_2 = "22222222-2222-4222-8222-222222222222"
CUSTOMER_B = "33333333-3333-4333-8333-333333333333"
PORTAL_1 = "portal01"
PORTAL_2 = "portal02"
CLIENT_EMAIL = "Client@Example.com"


def issue_token(*, sub: str = "user_1", **claims: object) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def portal_headers(email: str = CLIENT_EMAIL) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(sub='client_1', email=email)}"}


def team_headers(team_id: str = TEAM_A, **claims: object) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(sub='owner_1', team_id=team_id, **claims)}"}


@pytest.fixture(autouse=True)
def portal_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PORTAL_STORE_BACKEND", "memory")
    monkeypatch.delenv("PORTAL_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.setenv("PORTAL_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("OBJECT_STORAGE_PUBLIC_BASE_URL", "http://files.test/storage")
    monkeypatch.setenv("OBJECT_STORAGE_SIGNING_SECRET", "storage_test_secret")
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("PORTAL_DASHBOARD_URL", "https://app.example.com/")
    monkeypatch.delenv("SMTP_HOST", raising=False)
    yield


@pytest.fixture
def service():
    svc = create_service_from_env()
    svc.customers.upsert(
        customer={
            "id": CUSTOMER_1,
            "team_id": TEAM_A,
            "name": "Acme Co",
            "email": " client@example.com ",
            "portal_enabled": True,
            "portal_id": PORTAL_1,
        }
    )
    svc.customers.upsert(
        customer={
            "id": CUSTOMER_2,
            "team_id": TEAM_A,
            "name": "Globex",
            "email": "ops@globex.test",
            "portal_enabled": False,
            "portal_id": PORTAL_2,
        }
    )
    svc.customers.upsert(
        customer={
            "id": CUSTOMER_B,
            "team_id": TEAM_B,
            "name": "Initech",
            "email": "it@initech.test",
            "portal_enabled": False,
            "portal_id": None,
        }
    )
    return svc


@pytest.fixture
def client(service) -> TestClient:
    return TestClient(create_app(service=service))

from datetime import datetime, timedelta, timezone
from typing import Dict

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import ensure_indexes
from main import create_app
from services import Services

USER_PASSWORD = "Passw0rdA"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_name="fi_reviews_test",
        jwt_secret="test-access-secret",
        jwt_refresh_secret="test-refresh-secret",
        bcrypt_rounds=4,
        upload_dir=str(tmp_path / "uploads"),
        admin_email="admin@example.com",
        admin_password="Admin@1234",
        admin_name="Site Admin",
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["fi_reviews_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(settings, db, clock) -> Services:
    return Services.build(settings, db, clock)


@pytest.fixture
def client(settings, db, clock):
    app = create_app(settings=settings, db=db, clock=clock)
    with TestClient(app) as c:
        yield c


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client) -> Dict[str, str]:
    res = client.post("/init/bootstrap")
    assert res.status_code == 201, res.text
    res = client.post(
        "/api/auth/login", json={"email": "admin@example.com", "password": "Admin@1234"}
    )
    assert res.status_code == 200, res.text
    client.cookies.clear()
    return bearer(res.json()["access_token"])


@pytest.fixture
def register(client):
    def _register(name: str, email: str, password: str = USER_PASSWORD) -> Dict:
        res = client.post(
            "/api/auth/register", json={"name": name, "email": email, "password": password}
        )
        assert res.status_code == 201, res.text
        client.cookies.clear()
        body = res.json()
        body["headers"] = bearer(body["access_token"])
        return body
    return _register


@pytest.fixture
def approved_user(client, register, admin_headers):
    """Register, upload evidence and approve a user; returns its register body."""
    def _approved_user(name: str, email: str) -> Dict:
        body = register(name, email)
        res = client.post(
            "/api/auth/approval-evidence",
            files={"file": ("proof.png", b"\x89PNG fake image", "image/png")},
            headers=body["headers"],
        )
        assert res.status_code == 200, res.text
        res = client.put(f"/api/auth/approve-user/{body['user']['id']}", headers=admin_headers)
        assert res.status_code == 200, res.text
        return body
    return _approved_user


@pytest.fixture
def institution(client, admin_headers) -> Dict:
    res = client.post(
        "/api/institutions",
        json={
            "name": "Sakura Bank",
            "type": "bank",
            "description": "Regional retail bank",
            "location": "Tokyo",
            "website": "https://sakura.example.com",
        },
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()["data"]

"""Shared fixtures: an isolated SQLite file per test, sessions, users, an API client."""

import base64
import os

import pytest

# settings are read when huddle.db.database is first imported
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("MESSAGE_KEY_BASE64", base64.b64encode(b"0123456789abcdef").decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///./huddle-test.db")

from fastapi.testclient import TestClient  # noqa: E402

from huddle.core import security  # noqa: E402
from huddle.core.config import get_settings  # noqa: E402
from huddle.db import database  # noqa: E402
from huddle.controllers import users_controller  # noqa: E402

# keep bcrypt cheap under test
security.pwd_context.update(bcrypt__rounds=4)

PASSWORD = "correct-horse"


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    get_settings.cache_clear()
    database.rebind(get_settings().DATABASE_URL)
    database.init_db()
    yield database.SessionLocal
    database.engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
def db(isolated_db):
    session = isolated_db()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, password=PASSWORD):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        return users_controller.create_user(db, email, password)

    return _make


@pytest.fixture
def client(isolated_db):
    from huddle.main import app

    return TestClient(app)


def register_and_login(client: TestClient, email: str, password: str = PASSWORD) -> str:
    res = client.post("/auth/register", json={"email": email, "password": password})
    assert res.status_code == 201, res.text
    res = client.post("/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return res.json()["access_token"]


def auth_headers(token: str):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def login(client):
    """Register + log in; returns (headers, user_id)."""

    def _login(email: str):
        headers = auth_headers(register_and_login(client, email))
        me = client.get("/users/me", headers=headers)
        assert me.status_code == 200
        return headers, me.json()["id"]

    return _login

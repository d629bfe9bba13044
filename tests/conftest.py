from typing import Dict

import pytest
from fastapi.testclient import TestClient

from comm_tracker import db, storage
from comm_tracker.db import get_connection, init_schema

ADMIN_PASSWORD = "admin123"


@pytest.fixture
def con():
    c = get_connection(":memory:")
    init_schema(c)
    yield c
    c.close()


@pytest.fixture
def actor(con):
    cur = con.execute(
        "INSERT INTO users(username, full_name, password_hash, password_salt, role) "
        "VALUES ('tecnico1', 'Técnico', 'x', 'y', 'tecnico')"
    )
    con.commit()
    return {"id": cur.lastrowid, "username": "tecnico1", "role": "tecnico"}


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "test.sqlite")
    monkeypatch.setattr(storage, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("ADMIN_DEFAULT_PASSWORD", ADMIN_PASSWORD)
    return tmp_path


@pytest.fixture
def anon_client(app_env):
    from comm_tracker.main import app

    with TestClient(app) as c:
        yield c


def login(client: TestClient, username: str, password: str) -> Dict[str, str]:
    r = client.post("/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def login_as():
    return login


@pytest.fixture
def client(anon_client):
    anon_client.headers.update(login(anon_client, "admin", ADMIN_PASSWORD))
    # keep requests on the bearer token; cookie sessions have their own test
    anon_client.cookies.clear()
    return anon_client

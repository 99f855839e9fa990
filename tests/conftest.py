from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.database import make_engine
from app.main import create_app
from app.schemas import PostCreate, UserCreate
from app.sql_storage import SqlStorage
from app.storage import MemStorage


class TickingClock:
    """Each call is one second after the previous one."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture(params=["memory", "sql"])
def storage(request):
    clock = TickingClock()
    if request.param == "memory":
        return MemStorage(clock=clock)
    return SqlStorage(make_engine("sqlite://"), clock=clock)


def make_user(storage, username, display_name=None):
    return storage.create_user(UserCreate(
        username=username,
        email=f"{username}@example.com",
        password="hashed-password",
        display_name=display_name or username.title(),
    ))


def make_post(storage, author_id, title="Hello", content="World", **extra):
    return storage.create_post(author_id, PostCreate(title=title, content=content, **extra))


@pytest.fixture
def alice(storage):
    return make_user(storage, "alice")


@pytest.fixture
def bob(storage):
    return make_user(storage, "bob")


@pytest.fixture
def client():
    return TestClient(create_app(MemStorage()))


def register(client, username, password="password123"):
    response = client.post("/api/auth/register", json={
        "username": username,
        "email": f"{username}@example.com",
        "password": password,
        "displayName": username.title(),
    })
    assert response.status_code == 201
    body = response.json()
    return body["user"], {"Authorization": f"Bearer {body['access_token']}"}

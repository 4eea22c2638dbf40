"""
Shared fixtures: a fresh SQLite file per test and an app client bound to it.
"""
import json
import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
import pytest_asyncio

from config import settings
from database import init_db, connection
import users


class FakeWebSocket:
    """Collects everything the server sends to one connection."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(data))

    def of_type(self, event_type: str):
        return [event for event in self.sent if event["type"] == event_type]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "chillchat-test.db"


@pytest_asyncio.fixture
async def db(db_path):
    await init_db(db_path)
    async with connection(db_path) as conn:
        yield conn


@pytest_asyncio.fixture
async def alice(db):
    user, _ = await users.create_user(db, "Alice", "alice@example.com")
    return user


@pytest_asyncio.fixture
async def bob(db):
    user, _ = await users.create_user(db, "Bob", "bob@example.com")
    return user


@pytest_asyncio.fixture
async def carol(db):
    user, _ = await users.create_user(db, "Carol", "carol@example.com")
    return user


@pytest.fixture
def client(tmp_path, monkeypatch):
    """TestClient running the app lifespan against a temporary database."""
    from fastapi.testclient import TestClient
    import main

    monkeypatch.setattr(settings, "DATABASE_PATH", tmp_path / "api.db")
    monkeypatch.setattr(settings, "STORAGE_PATH", tmp_path / "objects")
    with TestClient(main.app) as test_client:
        yield test_client

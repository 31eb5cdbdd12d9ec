"""
Shared pytest fixtures for diary tests.

Every test runs against a fresh in-memory document store with cleared token
and lockout state, so nothing touches Firestore.
"""

import asyncio
from typing import Any, Dict, List, Tuple

import pytest

from backend import auth, config
from backend.store import MemoryDocumentStore, set_document_store

ADMIN_PASSWORD = "admin-secret"


class RecordingStore(MemoryDocumentStore):
    """MemoryDocumentStore that remembers every update call."""

    def __init__(self):
        super().__init__()
        self.updates: List[Tuple[str, str, Dict[str, Any]]] = []

    def update(self, collection, key, data):
        self.updates.append((collection, key, dict(data)))
        super().update(collection, key, data)

    def card_updates(self) -> List[Dict[str, Any]]:
        return [data for collection, _, data in self.updates if collection == "cards"]


class FailingStore(MemoryDocumentStore):
    """Store whose writes can be switched off to simulate an outage."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False

    def _check(self):
        if self.fail_writes:
            raise RuntimeError("store unavailable")

    def add(self, collection, data):
        self._check()
        return super().add(collection, data)

    def update(self, collection, key, data):
        self._check()
        super().update(collection, key, data)

    def delete(self, collection, key):
        self._check()
        super().delete(collection, key)


async def settle(rounds: int = 10):
    """Let queued snapshot callbacks run on the event loop."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    monkeypatch.setattr(config, "BCRYPT_ROUNDS", 4)


@pytest.fixture(autouse=True)
def auth_state(monkeypatch):
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.delenv("UNIVERSAL_DIARY_PASSWORD_HASH", raising=False)
    auth.login_lockouts.clear()
    auth.admin_tokens.clear()
    auth.diary_tokens.clear()
    yield
    auth.login_lockouts.clear()
    auth.admin_tokens.clear()
    auth.diary_tokens.clear()


@pytest.fixture(autouse=True)
def store():
    memory_store = MemoryDocumentStore()
    set_document_store(memory_store)
    yield memory_store
    set_document_store(None)


@pytest.fixture
def recording_store():
    memory_store = RecordingStore()
    set_document_store(memory_store)
    yield memory_store
    set_document_store(None)


@pytest.fixture
def failing_store():
    memory_store = FailingStore()
    set_document_store(memory_store)
    yield memory_store
    set_document_store(None)


@pytest.fixture
def diary_id(store):
    from backend import database

    return database.create_diary("client-001", "Alex Example", "Other")

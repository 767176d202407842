"""
Pytest fixtures for the Campus Quest API.

Every test gets a fresh Mongita in-memory database wrapped in the real
DocumentStore, a fake identity verifier that accepts ``Bearer token-<uid>``
and a blob store that records uploads instead of sending them anywhere.
"""

import uuid

import pytest
from fastapi.testclient import TestClient
from mongita import MongitaClientMemory

from auth import Identity, IdentityVerifier
from config import Settings
from database import DocumentStore
from errors import unauthorized
from lifecycle import QuestLifecycleEngine
from main import create_app
from quests import QuestRepository
from schemas import QuestCreate
from storage import BlobStore
from sweeper import ReconciliationSweeper
from users import UserLedger


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================


class FakeVerifier(IdentityVerifier):
    def verify(self, token: str) -> Identity:
        if not token.startswith("token-"):
            raise unauthorized("Unauthorized: Invalid token")
        uid = token[len("token-"):]
        return Identity(uid=uid, name=f"Player {uid}")


class RecordingBlobStore(BlobStore):
    def __init__(self):
        self.uploads = []

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        self.uploads.append({"path": path, "data": data, "content_type": content_type})
        return f"https://blobs.test/{path}"


# ============================================================================
# STORE AND SERVICES
# ============================================================================


@pytest.fixture
def settings():
    return Settings(fallback_database_name="test")


@pytest.fixture
def store():
    client = MongitaClientMemory()
    return DocumentStore(client[f"test_{uuid.uuid4().hex}"], client)


@pytest.fixture
def quests(store):
    return QuestRepository(store)


@pytest.fixture
def users(store):
    return UserLedger(store)


@pytest.fixture
def sweeper(store):
    return ReconciliationSweeper(store)


@pytest.fixture
def engine(store, quests, users, sweeper):
    return QuestLifecycleEngine(store, quests, users, sweeper, creator_bonus=True)


@pytest.fixture
def make_user(users, store):
    """Register a user and optionally overwrite some of its fields."""
    def _make(uid: str, **fields):
        users.create(uid, f"{uid}@campus.test", f"Player {uid}", fields.pop("Role", "player"))
        if fields:
            store.update("Users", uid, fields)
        return uid

    return _make


@pytest.fixture
def make_quest(quests):
    def _make(creator_id: str, **fields):
        data = {"name": "Find the Clock", "radius": 50, "reward": 100, "type": "landmark",
                "lat": -26.19, "lng": 28.03}
        data.update(fields)
        return quests.create(QuestCreate(**data), creator_id, f"Player {creator_id}")

    return _make


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def blobs():
    return RecordingBlobStore()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def app(settings, store, verifier, blobs):
    return create_app(settings, store=store, verifier=verifier, blobs=blobs)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth():
    """Authorization header for a given user id."""
    def _auth(uid: str):
        return {"Authorization": f"Bearer token-{uid}"}

    return _auth

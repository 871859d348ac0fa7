"""
Pytest configuration and shared fixtures.

Environment variables are set here before any app import so that settings
(and the engine built from them) point at a throwaway SQLite file.
"""

import hashlib
import hmac
import json
import os
import tempfile
import threading

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="chat-ingestion-tests-")

os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("MEDIA_STORAGE_DIR", os.path.join(_TMP_DIR, "media"))
os.environ.setdefault("PROFILE_LOOKUP_ENABLED", "true")
os.environ.setdefault("OUTBOX_WORKER_ENABLED", "false")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from app.errors import UpstreamError  # noqa: E402
from app.main import app  # noqa: E402
from app.media import get_media_storage  # noqa: E402
from app.models import Instance, InstanceStatus  # noqa: E402
from app.profiles import LookupResult, get_profile_lookup  # noqa: E402
from app.storage import Base, SessionLocal, engine  # noqa: E402
from app.utils import utc_now_iso  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
INSTANCE_NAME = "clinic-main"
INSTANCE_TOKEN = "tok-clinic"
TENANT_ID = "tenant-1"


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def _signed_post(client, payload: dict):
    body = json.dumps(payload)
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body),
        },
    )


class StubLookup:
    """ProfileLookup stand-in answering every call with a fixed result."""

    def __init__(self, result: LookupResult = None):
        self.result = result or LookupResult.missing()
        self.calls = []

    def contact_profile(self, instance, remote_id):
        self.calls.append(("contact", remote_id))
        return self.result

    def group_profile(self, instance, remote_id):
        self.calls.append(("group", remote_id))
        return self.result


class MemoryStorage:
    """ObjectStorage keeping uploads in a dict."""

    def __init__(self):
        self.objects = {}

    def put(self, key, data, content_type):
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"


class FailingStorage:
    def put(self, key, data, content_type):
        raise UpstreamError("storage unavailable")


@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def instance(db) -> Instance:
    now = utc_now_iso()
    row = Instance(
        name=INSTANCE_NAME,
        status=InstanceStatus.CONNECTED.value,
        credential=INSTANCE_TOKEN,
        tenant_id=TENANT_ID,
        server_url=None,
        enabled=True,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@pytest.fixture
def lookup() -> StubLookup:
    return StubLookup()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def client(tables, lookup, storage):
    """Test client with stubbed profile lookups and media storage."""
    app.dependency_overrides[get_profile_lookup] = lambda: lookup
    app.dependency_overrides[get_media_storage] = lambda: storage

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _uazapi_text(message_id: str, number: str = "5537999990000", text: str = "oi", **extra) -> dict:
    payload = {
        "EventType": "messages",
        "instanceName": INSTANCE_NAME,
        "token": INSTANCE_TOKEN,
        "message": {
            "messageid": message_id,
            "chatid": f"{number}@s.whatsapp.net",
            "fromMe": False,
            "isGroup": False,
            "messageType": "Conversation",
            "text": text,
            "senderName": "Maria",
            "messageTimestamp": 1736935200000,
        },
        "chat": {
            "wa_chatid": f"{number}@s.whatsapp.net",
            "name": "Maria",
        },
    }
    payload.update(extra)
    return payload


@pytest.fixture
def signed_post():
    """POST a payload to /webhook with a valid X-Signature: signed_post(client, payload)."""
    return _signed_post


@pytest.fixture
def uazapi_text():
    """Factory for UAZAPI text message events addressed to the test instance."""
    return _uazapi_text


@pytest.fixture
def failing_storage() -> FailingStorage:
    return FailingStorage()


@pytest.fixture
def make_lookup():
    """Factory for stub lookups answering with a given LookupResult."""
    return StubLookup


def _run_concurrently(workers: int, fn):
    """Run fn(index) in ``workers`` threads released at the same instant."""
    barrier = threading.Barrier(workers)
    results = [None] * workers
    errors = []

    def target(index):
        barrier.wait()
        try:
            results[index] = fn(index)
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=target, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert not errors, errors
    return results


@pytest.fixture
def run_concurrently():
    """run_concurrently(workers, fn) -> results of fn(0..workers-1), run in parallel threads."""
    return _run_concurrently

"""
Pytest configuration
Uses a throwaway SQLite database per test and an in-memory stand-in for
Google Drive. Settings are read from the environment at import time, so the
required variables are set before the application is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import asyncio
import secrets
import threading
import time
import uuid

import httpx
import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from drivevault.database import Base, build_engine, get_db
from drivevault.dependencies import (
    get_blob_store, get_record_store, get_reencryption_engine
)
from drivevault.exceptions import RemoteStoreFailure
from drivevault.main import app
from drivevault.models import User, UserKey, File
from drivevault.records import SqlRecordStore
from drivevault.reencryption import InMemoryJobStore, ReEncryptionEngine
from drivevault.utils.auth import create_access_token
from drivevault.utils.credentials import build_credential
from drivevault.utils.crypto import encrypt_for_storage


class InMemoryBlobStore:
    """Drive stand-in: handle -> bytes, with switches for failure injection"""

    def __init__(self):
        self.objects = {}
        self.fail_upload = False
        self.fail_download = set()
        self.fail_delete = False
        self.upload_delay = 0.0
        self.before_upload = None
        self.calls = []
        self._lock = threading.Lock()

    async def upload(self, user_id, data, name):
        self.calls.append(("upload", name))
        if self.before_upload is not None:
            self.before_upload()
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)
        if self.fail_upload:
            raise RemoteStoreFailure("upload failed")
        handle = f"drive-{secrets.token_hex(8)}"
        with self._lock:
            self.objects[handle] = bytes(data)
        return handle

    async def download(self, user_id, handle):
        self.calls.append(("download", handle))
        if handle in self.fail_download or handle not in self.objects:
            raise RemoteStoreFailure(f"download of {handle} failed")
        return self.objects[handle]

    async def delete(self, user_id, handle):
        self.calls.append(("delete", handle))
        if self.fail_delete:
            raise RemoteStoreFailure(f"delete of {handle} failed")
        with self._lock:
            self.objects.pop(handle, None)

    def put(self, data):
        handle = f"drive-{secrets.token_hex(8)}"
        self.objects[handle] = bytes(data)
        return handle


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Create a test database engine - fresh SQLite file for each test"""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a fresh database session for each test"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def records(session_factory):
    return SqlRecordStore(session_factory)


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def engine(records, blobs, job_store):
    return ReEncryptionEngine(records, blobs, job_store, concurrency=3)


@pytest.fixture(scope="function")
def overrides(session_factory, records, blobs, engine):
    """Point the app at the test database, blob fake and engine"""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_record_store] = lambda: records
    app.dependency_overrides[get_blob_store] = lambda: blobs
    app.dependency_overrides[get_reencryption_engine] = lambda: engine
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(overrides):
    """Create a test client with dependency overrides"""
    with TestClient(overrides) as test_client:
        yield test_client


def run_requests(engine, *calls):
    """
    Send requests concurrently on one event loop (no TestClient) and wait
    for any jobs they launched. Each call takes an httpx.AsyncClient.
    """
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            responses = await asyncio.gather(*(call(ac) for call in calls))
        await engine.drain()
        return responses

    return asyncio.run(scenario())


def auth_headers(subject="user_test", email="test@example.com"):
    token = create_access_token(data={"sub": subject, "email": email})
    return {"Authorization": f"Bearer {token}"}


def make_user(db_session, password="OldPass123", external_id=None):
    """Insert a user with a credential for the given password"""
    user = User(external_id=external_id or f"ext-{uuid.uuid4().hex}", email="owner@example.com")
    db_session.add(user)
    db_session.flush()
    credential = build_credential(user.id, password)
    db_session.add(UserKey(user_id=user.id, salt=credential.salt,
                           key_hash=credential.verification_hash))
    db_session.commit()
    db_session.refresh(user)
    return user


def make_file(db_session, blobs, user, plaintext, password, name="file.txt"):
    """Encrypt plaintext, store it in the blob fake and insert its row"""
    payload = encrypt_for_storage(plaintext, password)
    handle = blobs.put(payload.ciphertext)
    row = File(
        user_id=user.id,
        drive_file_id=handle,
        iv=payload.iv_b64,
        salt=payload.salt_b64,
        auth_tag=payload.auth_tag_b64,
        file_name=name,
        mime_type="text/plain",
        file_size=len(plaintext),
    )
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


def wait_for_job(client, job_id, headers, timeout=30.0):
    """Poll the status endpoint until the job reaches a terminal state"""
    deadline = time.time() + timeout
    polls = []
    while time.time() < deadline:
        response = client.get(f"/api/settings/reencryption/{job_id}", headers=headers)
        assert response.status_code == 200
        body = response.json()
        polls.append(body)
        if body["status"] in ("completed", "failed"):
            return body, polls
        time.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not finish in {timeout}s")

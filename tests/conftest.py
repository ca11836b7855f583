"""
Pytest configuration for the ComplianceBackend test suite.

Configures:
- in-memory SQLite engine/session with foreign keys and working SAVEPOINTs
- fake blob store and rate limiter
- a FastAPI TestClient wired to the test database
"""
import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ComplianceBackend.models  # noqa: F401
from ComplianceBackend.database import Base, get_db
from ComplianceBackend.errors import BlobStorageError
from ComplianceBackend.rate_limiters.upload_rate_limiter import (
    RateLimitDecision,
    get_upload_rate_limiter,
    reset_upload_rate_limiter,
)
from ComplianceBackend.services.blob_store import BlobLocation, get_blob_store, reset_blob_store
from ComplianceBackend.services.document_types import reset_document_type_cache


class FakeBlobStore:
    provider = "fake"

    def __init__(self, *, fail_put: bool = False, fail_delete: bool = False):
        self.fail_put = fail_put
        self.fail_delete = fail_delete
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []

    def put(self, body, *, content_type, user_id, document_id, filename, metadata=None):
        if self.fail_put:
            raise BlobStorageError("blob service unavailable")
        key = f"rag-documents/{user_id}/{document_id}/{filename}"
        self.objects[key] = body
        return BlobLocation(
            provider=self.provider,
            store="rag-documents",
            key=key,
            path=f"rag-documents/{key}",
            url=f"https://blobs.example.test/{key}",
            size=len(body),
            etag="etag-1",
            content_type=content_type,
        )

    def delete(self, key):
        if self.fail_delete:
            raise BlobStorageError("delete failed")
        self.deleted.append(key)
        self.objects.pop(key, None)


class FakeLimiter:
    def __init__(self, allowed: bool = True, wait_seconds: int = 0):
        self.allowed = allowed
        self.wait_seconds = wait_seconds
        self.calls: list[str] = []

    def check(self, user_id):
        self.calls.append(user_id)
        return RateLimitDecision(allowed=self.allowed, wait_seconds=self.wait_seconds)


@pytest.fixture(autouse=True)
def _reset_process_caches(monkeypatch):
    monkeypatch.delenv("AUTH_JWKS_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)
    reset_document_type_cache()
    reset_blob_store()
    reset_upload_rate_limiter()
    yield
    reset_document_type_cache()
    reset_blob_store()
    reset_upload_rate_limiter()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN ourselves
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def limiter():
    return FakeLimiter()


@pytest.fixture
def client(session_factory, blob_store, limiter):
    from ComplianceBackend.app import app

    def _override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_upload_rate_limiter] = lambda: limiter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"x-user-id": "user-1"}


@pytest.fixture
def blob_store_factory():
    return FakeBlobStore


@pytest.fixture
def limiter_factory():
    return FakeLimiter

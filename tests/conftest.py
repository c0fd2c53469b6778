# tests/conftest.py
import os
import threading

# The app builds its engine and settings at import time; keep both local.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AWS_S3_BUCKET_NAME", "test-bucket")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.errors import BlobNotFound
from app.models import Base, User
from app.services.tree import DocumentTreeService, UploadItem
from app.storage.blob import BlobStore


class FakeBlobStore(BlobStore):
    """In-memory blob store that can be told to fail."""

    def __init__(self):
        self.objects = {}
        self.delete_calls = []
        self.fail_deletes = False
        self.fail_puts = False
        self._lock = threading.Lock()

    def put(self, key, data, content_type):
        if self.fail_puts:
            raise RuntimeError("S3 unavailable")
        with self._lock:
            self.objects[key] = (data, content_type)
        return key

    def get(self, key):
        if key not in self.objects:
            raise BlobNotFound(key)
        return self.objects[key][0]

    def delete(self, key):
        with self._lock:
            self.delete_calls.append(key)
        if self.fail_deletes:
            raise RuntimeError("S3 unavailable")
        with self._lock:
            self.objects.pop(key, None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        aws_s3_bucket_name="test-bucket",
        blob_delete_concurrency=4,
        max_upload_size_bytes=1024 * 1024,
    )


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def owner(db):
    user = User(username="mechanic", password="x")
    db.add(user)
    db.commit()
    return user.id


@pytest.fixture
def other_owner(db):
    user = User(username="inspector", password="x")
    db.add(user)
    db.commit()
    return user.id


@pytest.fixture
def service(db, blob_store, test_settings):
    return DocumentTreeService(db, blob_store, test_settings)


@pytest.fixture
def upload(service):
    """Uploads one file and returns its row."""

    def _upload(owner_id, file_name, folder_id=None, content=b"%PDF-1.4", **kwargs):
        result = service.upload_files(
            owner_id,
            [UploadItem(file_name, content, "application/pdf")],
            folder_id=folder_id,
            **kwargs,
        )
        assert result.errors == []
        return result.files[0]

    return _upload


@pytest.fixture
def client(session_factory, blob_store, test_settings):
    from app.core.config import get_settings
    from app.main import app
    from app.models.database import get_db
    from app.routers.documents import get_blob_store

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_settings] = lambda: test_settings

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def logged_in(client):
    client.post("/signup", data={"username": "mechanic", "password": "s3cret"})
    response = client.post("/login", data={"username": "mechanic", "password": "s3cret"})
    assert response.status_code == 200
    return client

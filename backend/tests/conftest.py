import io

import pytest
from fastapi.testclient import TestClient
from starlette.datastructures import Headers, UploadFile

from filevault.core.config import Settings
from filevault.core.database import Base, create_db_engine, create_session_factory
from filevault.main import create_app
from filevault.models.file import FileRecord  # noqa: F401
from filevault.models.user import User  # noqa: F401
from filevault.storage.chunked_storage import ChunkedBlobStore

PASSWORD = "secret123"


def build_settings(tmp_path, **overrides) -> Settings:
    values = {
        "APP_ENV": "test",
        "DATABASE_URL": f"sqlite:///{tmp_path / 'metadata.db'}",
        "BLOB_DATABASE_URL": f"sqlite:///{tmp_path / 'blobs.db'}",
        "SECRET_KEY": "test-secret",
        "RECONCILE_ENABLED": False,
        "CORS_ORIGINS": "http://localhost:5173",
    }
    values.update(overrides)
    return Settings(**values)


def register_and_login(client: TestClient, email: str) -> dict:
    """Create a user and return Authorization headers for it"""
    register = client.post("/api/auth/register", json={"email": email, "password": PASSWORD})
    assert register.status_code == 201, register.text
    login = client.post("/api/auth/login", data={"username": email, "password": PASSWORD})
    assert login.status_code == 200, login.text
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


def make_upload(data: bytes, filename: str = "photo.png", content_type: str = "image/png") -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data),
        size=len(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


@pytest.fixture
def settings(tmp_path):
    return build_settings(tmp_path)


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    return register_and_login(client, "alice@example.com")


@pytest.fixture
def other_auth_headers(client):
    return register_and_login(client, "bob@example.com")


@pytest.fixture
def blob_store(tmp_path):
    """Standalone store with tiny chunks so small payloads span several chunks"""
    store = ChunkedBlobStore(f"sqlite:///{tmp_path / 'store.db'}", bucket_name="test", chunk_size=4)
    store.init()
    yield store
    store.close()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'repo.db'}")
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()

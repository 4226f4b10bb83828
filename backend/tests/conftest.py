"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for candidate in (ROOT_DIR, ROOT_DIR / "src"):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

# Keep application startup away from the developer's database and storage.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="connecthub-storage-"))
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("REALTIME_REDIS_URL", None)

from app.config import get_settings
from app.core.security import create_access_token
from app.main import app
from app.models import Base
from app.services.backend import get_backend, get_local_storage, get_token_auth
from app.services.realtime import change_feed
from connecthub.backend import LocalStorage, SqlBackend


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def storage(tmp_path) -> LocalStorage:
    settings = get_settings()
    return LocalStorage(
        tmp_path / "objects",
        base_url=settings.storage_base_url,
        public_buckets=settings.public_buckets,
        signing_key=settings.jwt_secret_key,
    )


@pytest.fixture()
def backend(session_factory, storage) -> SqlBackend:
    """SQL backend over the test engine that publishes to the process change feed."""

    return SqlBackend(
        session_factory,
        Base.metadata,
        storage=storage,
        auth=get_token_auth(),
        changes=change_feed,
        max_workers=1,
    )


@pytest.fixture()
def client(backend, storage) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the backend dependencies overridden."""

    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_local_storage] = lambda: storage
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Build ``Authorization`` headers for an arbitrary user id."""

    def build(user_id: str, email: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, email=email)}"}

    return build

"""
Shared fixtures: a fake GitHub, an in-memory SQL cache and a wired service.
"""
import os
from datetime import datetime, timezone

os.environ.setdefault("CACHE_BACKEND", "none")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("GITHUB_TOKEN", "")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from database import init_db
from license_service import LicenseService
from main import app, get_service
from sources import Origin, SourceResult
from stores import GitHubDocumentStore, LocalFileStore, SqlCacheStore
from helpers import FakeGitHub

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        GITHUB_TOKEN="",
        CACHE_BACKEND="none",
        LICENSES_FILE_PATH=str(tmp_path / "licenses.json"),
        STATIC_LICENSES_PATH=str(tmp_path / "static.json"),
    )


@pytest.fixture
def fake_github():
    return FakeGitHub(licenses=[])


@pytest.fixture
def make_remote(fake_github):
    def factory(token=""):
        return GitHubDocumentStore(
            owner="acme",
            repo="licenses",
            token=token,
            transport=httpx.MockTransport(fake_github),
        )

    return factory


@pytest.fixture
def sql_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def make_service(test_settings, make_remote, tmp_path):
    def factory(static=(), cache=None, token="", local_file=True):
        return LicenseService(
            static_snapshot=SourceResult(origin=Origin.STATIC, records=tuple(static)),
            remote=make_remote(token),
            cache=cache,
            local_file=LocalFileStore(test_settings.LICENSES_FILE_PATH) if local_file else None,
            settings=test_settings,
        )

    return factory


@pytest.fixture
def client_for():
    def factory(service):
        app.dependency_overrides[get_service] = lambda: service
        return TestClient(app)

    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def sql_cache(sql_session_factory):
    return SqlCacheStore(sql_session_factory)

"""Pytest configuration and fixtures for ForkChat tests.

Test isolation strategy:
- Every test that touches the database gets its own SQLite file under
  tmp_path, created from the ORM metadata; nothing is shared between tests
- Redis is replaced by the in-memory FakeAsyncRedis from tests.fakes
- Provider HTTP is mocked with respx; no test reaches the network
- Auth tests use authenticated_client with MockJwtVerifier tokens
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path
from uuid import UUID

# Settings are read at app creation; give every test a complete environment
os.environ.setdefault("FORKCHAT_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./forkchat-test.db")
os.environ.setdefault("AUTH_JWKS_URL", "http://localhost:9999/.well-known/jwks.json")
os.environ.setdefault("AUTH_ISSUER", "test-issuer")
os.environ.setdefault("AUTH_AUDIENCES", "test-audience")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("CANCEL_POLL_INTERVAL_S", "0.05")

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from forkchat.app import add_request_id_middleware, create_app
from forkchat.config import clear_settings_cache
from forkchat.db.engine import create_db_engine
from forkchat.db.models import Base
from forkchat.db.session import create_session_factory
from tests.fakes import FakeAsyncRedis
from tests.helpers import create_test_user_id
from tests.support.test_verifier import MockJwtVerifier


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Point DATABASE_URL at a fresh SQLite file for this test."""
    url = f"sqlite:///{tmp_path / 'forkchat.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    clear_settings_cache()
    return url


@pytest.fixture
def engine(database_url: str) -> Generator[Engine, None, None]:
    """Engine with the schema created from the ORM metadata."""
    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """A plain session on the per-test database. Commits are real."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis()


@pytest.fixture
def client(engine: Engine, fake_redis: FakeAsyncRedis) -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client without authentication.

    Suitable for public endpoints (health, CORS preflight).
    """
    app = create_app(skip_auth_middleware=True, redis_client=fake_redis)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def test_verifier() -> MockJwtVerifier:
    """Provide a test token verifier."""
    return MockJwtVerifier()


@pytest.fixture
def authenticated_app(engine: Engine, fake_redis: FakeAsyncRedis, test_verifier):
    """Provide the full app (auth, CORS, request-id) with the test verifier."""
    app = create_app(token_verifier=test_verifier, redis_client=fake_redis)
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def authenticated_client(authenticated_app) -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client with auth middleware.

    Use auth_headers() to generate valid tokens for requests.
    """
    with TestClient(authenticated_app) as client:
        yield client


@pytest.fixture
def test_user_id() -> UUID:
    """Generate a random UUID for a test user."""
    return create_test_user_id()

"""
Shared pytest fixtures for the CryptoTax test suite.

Uses FastAPI TestClient with an isolated temporary database per test so tests
never touch the real database file.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cryptotax.database import Base, get_db
from cryptotax.main import app
from cryptotax.services.gains import match_cache

# Import all models so Base.metadata knows about them
from cryptotax.models.user import User  # noqa: F401
from cryptotax.models.source import Source  # noqa: F401
from cryptotax.models.transaction import LotSelection, Transaction  # noqa: F401

LOGIN_CREDS = {"username": "alice", "password": "correct horse"}


@pytest.fixture
def test_engine(tmp_path):
    """A fresh SQLite file for each test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session(session_factory):
    """Direct SQLAlchemy session for service-level tests."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture(autouse=True)
def clear_match_cache():
    match_cache.clear()
    yield
    match_cache.clear()


@pytest.fixture
def client(session_factory):
    """Unauthenticated TestClient bound to the temporary database."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_client(client):
    """TestClient with a registered, logged-in user."""
    r = client.post("/api/users/register", json=LOGIN_CREDS)
    assert r.status_code == 201, f"register failed: {r.status_code} {r.text}"
    r = client.post("/api/login", json=LOGIN_CREDS)
    assert r.status_code == 200, f"login failed: {r.status_code} {r.text}"
    return client


@pytest.fixture
def user(db_session):
    """A user row for service-level tests."""
    u = User(username="bob")
    u.set_password("secret")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u

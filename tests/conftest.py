"""
Shared test fixtures.

Sets up an isolated SQLite database so tests never touch the
real database. Tables are created before each test and dropped
after, so no test data persists.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from audit_engine.main import app
from audit_engine.api.deps import get_oracle
from audit_engine.models.base import Base, get_db
from audit_engine.services.reputation import StaticReputationOracle


TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

TestSessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)

DENYLISTED_IP = "203.0.113.66"

ADMIN_HEADERS = {
    "X-Actor-Id": "admin-1",
    "X-Actor-Name": "Alice Admin",
    "X-Actor-Role": "admin",
}


@pytest.fixture(autouse=True)
def setup_database():
    """Create all tables before each test, drop them after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provide a database session for direct service testing."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory():
    """Open extra sessions to simulate concurrent writers."""
    sessions = []

    def open_session():
        session = TestSessionLocal()
        sessions.append(session)
        return session

    yield open_session
    for session in sessions:
        session.rollback()
        session.close()


@pytest.fixture
def oracle():
    return StaticReputationOracle({DENYLISTED_IP})


@pytest.fixture
def client(db_session, oracle):
    """
    Provide a test client bound to the test database.

    get_db is overridden so the app uses the test session, and
    the reputation oracle is replaced with a fixed denylist.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_oracle] = lambda: oracle
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)

import os

# Settings are read at import time, so the environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("BROADCAST_BACKEND", "local")

from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from faker import Faker

from app.main import app
from app.api.deps import get_broadcaster
from app.core.database import Base, get_db, get_session_scope, configure_sqlite
from app.core.security import CurrentUser, create_access_token
from app.models.user import User
from app.realtime.broadcaster import LocalBroadcaster
from app.realtime.connection_manager import connection_manager

fake = Faker()

# In-memory database shared by every session of a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
configure_sqlite(engine)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingBroadcaster(LocalBroadcaster):
    """Delivers to local sockets like the real thing and remembers every event."""

    def __init__(self, manager=connection_manager):
        super().__init__(manager)
        self.events = []
        self.unsubscribed = []

    async def _deliver_to_conversation(self, conversation_id, event, data):
        self.events.append(("conversation", conversation_id, event, data))
        await super()._deliver_to_conversation(conversation_id, event, data)

    async def _deliver_to_user(self, user_id, event, data):
        self.events.append(("user", user_id, event, data))
        await super()._deliver_to_user(user_id, event, data)

    async def unsubscribe(self, conversation_id, user_id):
        self.unsubscribed.append((conversation_id, user_id))
        await super().unsubscribe(conversation_id, user_id)

    def named(self, event):
        return [entry for entry in self.events if entry[2] == event]

    def targets(self, event, scope="user"):
        return [target for entry_scope, target, name, _ in self.events if name == event and entry_scope == scope]


class FailingBroadcaster(LocalBroadcaster):
    """Every delivery blows up, as when the pub/sub backend is down."""

    async def _deliver_to_conversation(self, conversation_id, event, data):
        raise ConnectionError("broker unavailable")

    async def _deliver_to_user(self, user_id, event, data):
        raise ConnectionError("broker unavailable")


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture(scope="function")
def failing_broadcaster():
    return FailingBroadcaster(connection_manager)


@pytest.fixture(scope="function")
def client(db_session, broadcaster):
    """Create a test client with database and broadcaster overrides."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    @contextmanager
    def override_session_scope():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_scope] = lambda: override_session_scope
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def make_user(db_session):
    """Factory for directory users."""

    def _make_user(name=None, role="user", is_active=True):
        user = User(
            name=name or fake.name(),
            email=fake.unique.email(),
            role=role,
            is_active=is_active,
            avatar_url=fake.image_url()
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture(scope="function")
def alice(make_user):
    return make_user(name="Alice")


@pytest.fixture(scope="function")
def bob(make_user):
    return make_user(name="Bob")


@pytest.fixture(scope="function")
def carol(make_user):
    return make_user(name="Carol")


@pytest.fixture(scope="function")
def admin(make_user):
    return make_user(name="Admin", role="admin")


@pytest.fixture(scope="function")
def query_counter():
    """Count SQL statements sent to the test engine inside the block."""

    @contextmanager
    def _count():
        statements = []

        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine, "before_cursor_execute", before_cursor_execute)
        try:
            yield statements
        finally:
            event.remove(engine, "before_cursor_execute", before_cursor_execute)

    return _count


@pytest.fixture(scope="function")
def identity():
    """Trusted identity for a directory user."""

    def _identity(user):
        return CurrentUser(id=user.id, name=user.name, role=user.role)

    return _identity


@pytest.fixture(scope="function")
def auth_headers():
    """Bearer headers for a directory user."""

    def _auth_headers(user):
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )

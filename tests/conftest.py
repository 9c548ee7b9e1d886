"""Shared test fixtures and configuration."""
import os
import pytest
from typing import Optional
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MEDIA_BACKEND", "synthetic")

from peerlink.main import app
from peerlink.db.database import Base, get_db
from peerlink.core.config import Settings
from peerlink.core.dependencies import get_data_store, get_session_manager
from peerlink.services.call_session.context import CallContext
from peerlink.services.call_session.manager import CallSessionManager
from peerlink.services.call_session.media import MediaDevices, SyntheticMediaDevices
from peerlink.services.datastore.notifier import InsertNotifier
from peerlink.services.datastore.sql_store import SqlDataStore

from tests.fakes import FakeTransportFactory


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        media_backend="synthetic",
        signal_send_max_attempts=3,
        signal_send_backoff_base=0.001,
        signal_send_backoff_max=0.004,
        error_close_delay=0.05,
        duration_tick_interval=0.05,
        recording_dir=None,
    )


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def test_db(test_db_engine):
    """Create test database session."""
    async_session = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
async def store_engine(tmp_path):
    """File-backed engine so concurrent store operations get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def notifier():
    """Insert notifier, closed after the test."""
    notifier = InsertNotifier()
    yield notifier
    await notifier.close()


@pytest.fixture
def test_store(store_engine, notifier):
    """SQL data store on the file-backed engine."""
    session_factory = async_sessionmaker(store_engine, class_=AsyncSession, expire_on_commit=False)
    return SqlDataStore(session_factory, notifier)


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def make_context(test_store, test_settings, transport_factory):
    """Build a call context for a user on the shared test store."""
    def _make_context(user_id: str, media: Optional[MediaDevices] = None) -> CallContext:
        return CallContext(
            store=test_store,
            media=media or SyntheticMediaDevices(),
            user_id=user_id,
            settings=test_settings,
            transport_factory=transport_factory,
        )
    return _make_context


@pytest.fixture
def fake_sink_factory():
    """Sink factory recording every sink it builds."""
    sinks = []

    def _factory(controller):
        sink = MagicMock()
        sink.start = AsyncMock()
        sink.stop = AsyncMock()
        sinks.append(sink)
        return sink

    _factory.sinks = sinks
    return _factory


@pytest.fixture
def clean_call_sessions():
    """Clean up hosted call sessions before and after tests."""
    from peerlink.services.call_session import manager
    manager._sessions.clear()
    yield
    manager._sessions.clear()


async def _create_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def api_engine(tmp_path):
    return create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")


@pytest.fixture
def api_store(api_engine):
    session_factory = async_sessionmaker(api_engine, class_=AsyncSession, expire_on_commit=False)
    return SqlDataStore(session_factory, InsertNotifier())


@pytest.fixture
def override_session_manager(api_store, test_settings, transport_factory, fake_sink_factory):
    """Install a session manager override using the given capture backend."""
    def _override(media: Optional[MediaDevices] = None):
        def _get_session_manager():
            return CallSessionManager(
                store=api_store,
                media=media or SyntheticMediaDevices(),
                config=test_settings,
                transport_factory=transport_factory,
                sink_factory=fake_sink_factory,
            )
        app.dependency_overrides[get_session_manager] = _get_session_manager
    return _override


@pytest.fixture
def test_client(api_engine, api_store, override_session_manager, clean_call_sessions):
    """Create FastAPI test client with overrides."""
    session_factory = api_store.session_factory

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    # Override dependencies
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_data_store] = lambda: api_store
    override_session_manager()

    with TestClient(app) as client:
        client.portal.call(_create_tables, api_engine)
        yield client
        client.portal.call(CallSessionManager(api_store, SyntheticMediaDevices()).end_all)
        client.portal.call(api_store.notifier.close)
        client.portal.call(api_engine.dispose)

    # Clear overrides
    app.dependency_overrides.clear()

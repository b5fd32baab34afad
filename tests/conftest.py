"""
Shared test fixtures — async DB, FastAPI test client, sample tracking data.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import api.models  # noqa: F401  (register tables)
from api.config import settings
from api.database import Base, get_db
from api.main import app
from api.models.tracking import AnalyticsSession, ScrollEvent, SectionEvent, Visit


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
TEST_PASSWORD = "test-dashboard-pass"

CHROME_DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(db_session_factory):
    async with db_session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(db_session_factory):
    """FastAPI test client with test DB injected."""

    async def _override_get_db():
        async with db_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Settings ────────────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_settings(monkeypatch):
    """Pin the settings every test relies on."""
    monkeypatch.setattr(settings, "analytics_password", TEST_PASSWORD)
    monkeypatch.setattr(settings, "session_timeout_minutes", 30)
    monkeypatch.setattr(settings, "raw_retention_days", 14)
    monkeypatch.setattr(settings, "aggregate_retention_days", 30)
    monkeypatch.setattr(settings, "basic_page_view_retention_days", 365)
    monkeypatch.setattr(settings, "retention_hour_utc", 2)
    monkeypatch.setattr(settings, "retention_retry_seconds", 3600)
    monkeypatch.setattr(settings, "recent_visits_limit", 10)
    return settings


# ── Sample data ─────────────────────────────────────────

@pytest.fixture
def now():
    """A fixed 'now' well past midnight so day windows are unambiguous."""
    return datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_session(db_session):
    """Insert a session row directly. Returns an async factory."""

    async def _make(
        session_id: str,
        created_at: datetime,
        device: str = "Desktop",
        browser: str = "Chrome",
        expires_in: timedelta = timedelta(minutes=30),
    ) -> AnalyticsSession:
        session = AnalyticsSession(
            session_id=session_id,
            created_at=created_at,
            last_activity=created_at,
            expires_at=created_at + expires_in,
            device_category=device,
            browser_family=browser,
        )
        db_session.add(session)
        await db_session.commit()
        return session

    return _make


@pytest.fixture
def make_visit(db_session):
    """Insert a visit with optional scroll milestones and section events."""

    async def _make(
        session: AnalyticsSession,
        page: str = "/",
        duration_ms: int = 0,
        started_at: datetime | None = None,
        scrolls: tuple[int, ...] = (),
        sections: tuple[tuple[str, int], ...] = (),
    ) -> Visit:
        visit = Visit(
            session_id=session.session_id,
            page=page,
            started_at=started_at or session.created_at,
            duration_ms=duration_ms,
        )
        db_session.add(visit)
        await db_session.flush()
        for depth in scrolls:
            db_session.add(ScrollEvent(visit_id=visit.id, depth_percent=depth))
        for name, ms in sections:
            db_session.add(SectionEvent(visit_id=visit.id, section_name=name, duration_ms=ms))
        await db_session.commit()
        return visit

    return _make

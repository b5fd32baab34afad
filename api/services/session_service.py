"""
Session Service — anonymous sessions with a sliding-window timeout.

A session is valid while ``now <= expires_at``.  Every tracked event pushes
``expires_at`` out by the configured window.  An expired session is never
revived: the client has to mint a fresh identifier.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import settings
from api.models.tracking import AnalyticsSession

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for session lookups that the client must react to."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    pass


class SessionExpiredError(SessionError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes — treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def session_timeout() -> timedelta:
    return timedelta(minutes=settings.session_timeout_minutes)


def is_expired(session: AnalyticsSession, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return now > as_utc(session.expires_at)


def classify_user_agent(user_agent: str | None) -> tuple[str, str]:
    """
    Reduce a User-Agent to (device category, browser family).

    Only coarse buckets are kept — no versions, no OS, nothing that helps
    fingerprint a visitor.
    """
    if not user_agent:
        return "Unknown", "Unknown"

    ua = user_agent.lower()

    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        device = "Tablet"
    elif "mobile" in ua:
        device = "Mobile"
    else:
        device = "Desktop"

    if "edg/" in ua:
        browser = "Edge"
    elif "chrome/" in ua:
        browser = "Chrome"
    elif "firefox/" in ua:
        browser = "Firefox"
    elif "safari/" in ua and "chrome" not in ua:
        browser = "Safari"
    else:
        browser = "Other"

    return device, browser


def _extend(session: AnalyticsSession, now: datetime) -> None:
    session.last_activity = now
    session.expires_at = now + session_timeout()


async def get_or_create_session(
    db: AsyncSession,
    session_id: str,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> AnalyticsSession:
    """
    Return the live session for ``session_id``, extending its expiry,
    or create it if the id is unknown.

    Raises ``SessionExpiredError`` when the id exists but has lapsed.
    """
    if not session_id or not session_id.strip():
        raise ValueError("session_id is required")

    now = now or utcnow()
    session = await db.get(AnalyticsSession, session_id)

    if session is not None:
        if is_expired(session, now):
            logger.info("Session expired: %s", session_id)
            raise SessionExpiredError(session_id)
        _extend(session, now)
        await db.commit()
        return session

    device, browser = classify_user_agent(user_agent)
    session = AnalyticsSession(
        session_id=session_id,
        created_at=now,
        last_activity=now,
        expires_at=now + session_timeout(),
        device_category=device,
        browser_family=browser,
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError:
        # Two first-requests raced on the same id; the other one won.
        await db.rollback()
        session = await db.get(AnalyticsSession, session_id)
        if session is None or is_expired(session, now):
            raise SessionExpiredError(session_id)
        _extend(session, now)
        await db.commit()
        return session

    logger.info("🆕 Created session %s (%s/%s)", session_id, device, browser)
    return session


async def touch_session(
    db: AsyncSession,
    session_id: str,
    now: datetime | None = None,
) -> AnalyticsSession:
    """Extend an existing, unexpired session. Never creates one."""
    now = now or utcnow()
    session = await db.get(AnalyticsSession, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    if is_expired(session, now):
        raise SessionExpiredError(session_id)
    _extend(session, now)
    await db.flush()
    return session


async def validate_session(
    db: AsyncSession,
    session_id: str,
    now: datetime | None = None,
) -> bool:
    """True iff the session exists and has not expired. Read-only."""
    if not session_id or not session_id.strip():
        return False
    session = await db.get(AnalyticsSession, session_id)
    if session is None:
        return False
    return not is_expired(session, now)

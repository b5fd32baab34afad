"""
Tracking — event ingestion for visits, scroll milestones, section dwell,
visit end and the cookieless page-view counter.

All writes go through the request-scoped ``AsyncSession`` handed in by the
route.  Duplicate scroll milestones and counter-insert races are absorbed
here so the browser beacon never sees a storage conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from api.models.aggregates import BasicPageViewAggregate
from api.models.tracking import AnalyticsSession, ScrollEvent, SectionEvent, Visit
from api.services.session_service import utcnow

logger = logging.getLogger(__name__)

MILESTONES = (25, 50, 75, 100)


# ─────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────

def normalize_scroll_depth(percent: float) -> int:
    """Snap a raw scroll percentage to the nearest milestone.

    Milestones are scanned in ascending order, so an exact tie
    (e.g. 37.5) resolves to the lower one.
    """
    percent = max(0.0, min(100.0, float(percent)))
    return min(MILESTONES, key=lambda m: abs(m - percent))


def is_missing_table(exc: Exception) -> bool:
    """True when the DB error means the table hasn't been created yet."""
    msg = str(getattr(exc, "orig", exc)).lower()
    return "no such table" in msg or ("relation" in msg and "does not exist" in msg)


# ─────────────────────────────────────────────────────────────────────
# visits
# ─────────────────────────────────────────────────────────────────────

async def create_visit(
    db: AsyncSession,
    session: AnalyticsSession,
    page: str,
    referrer: str | None = None,
    now: datetime | None = None,
) -> Visit:
    visit = Visit(
        session_id=session.session_id,
        page=page,
        referrer=referrer or None,
        started_at=now or utcnow(),
        duration_ms=0,
    )
    db.add(visit)
    await db.commit()
    logger.debug("Tracked visit %s → %s", session.session_id, page)
    return visit


async def resolve_visit(
    db: AsyncSession,
    session_id: str,
    visit_id: str | None = None,
) -> Visit | None:
    """
    Find the visit an event belongs to.

    Clients that echo the ``visitId`` from ``/visit`` get an exact match
    (which must belong to the same session).  Older clients fall back to the
    session's most recent visit.
    """
    if visit_id:
        visit = await db.get(Visit, visit_id)
        if visit is None or visit.session_id != session_id:
            return None
        return visit

    result = await db.execute(
        select(Visit)
        .where(Visit.session_id == session_id)
        .order_by(Visit.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ─────────────────────────────────────────────────────────────────────
# events
# ─────────────────────────────────────────────────────────────────────

async def _milestone_recorded(db: AsyncSession, visit_id: str, milestone: int) -> bool:
    existing = (
        await db.execute(
            select(ScrollEvent.id).where(
                ScrollEvent.visit_id == visit_id,
                ScrollEvent.depth_percent == milestone,
            )
        )
    ).scalar_one_or_none()
    return existing is not None


async def record_scroll(
    db: AsyncSession,
    visit: Visit,
    depth_percent: float,
    now: datetime | None = None,
) -> tuple[int, bool]:
    """
    Record a scroll milestone once per visit.

    Returns ``(milestone, created)``.  A repeat report — including one that
    loses an insert race against a concurrent request — is a silent no-op.
    """
    milestone = normalize_scroll_depth(depth_percent)

    if await _milestone_recorded(db, visit.id, milestone):
        await db.commit()
        return milestone, False

    try:
        async with db.begin_nested():
            db.add(ScrollEvent(
                visit_id=visit.id,
                depth_percent=milestone,
                created_at=now or utcnow(),
            ))
    except IntegrityError:
        logger.debug("Scroll milestone %d%% for visit %s already recorded", milestone, visit.id)
        await db.commit()
        return milestone, False

    await db.commit()
    logger.debug("Tracked scroll %d%% for visit %s", milestone, visit.id)
    return milestone, True


async def record_section(
    db: AsyncSession,
    visit: Visit,
    section_name: str,
    duration_ms: int,
    now: datetime | None = None,
) -> SectionEvent:
    event = SectionEvent(
        visit_id=visit.id,
        section_name=section_name,
        duration_ms=duration_ms,
        created_at=now or utcnow(),
    )
    db.add(event)
    await db.commit()
    logger.debug("Tracked section %s (%dms) for visit %s", section_name, duration_ms, visit.id)
    return event


async def end_visit(db: AsyncSession, visit: Visit, duration_ms: int) -> Visit:
    """Set the visit's duration. A repeated end report overwrites it."""
    visit.duration_ms = duration_ms
    await db.commit()
    logger.debug("Ended visit %s after %dms", visit.id, duration_ms)
    return visit


# ─────────────────────────────────────────────────────────────────────
# cookieless counter
# ─────────────────────────────────────────────────────────────────────

async def record_basic_page_view(
    db: AsyncSession,
    path: str,
    device: str | None = None,
    now: datetime | None = None,
) -> int | None:
    """
    Increment the (today, path, device) counter.

    Returns the new count, or ``None`` when the table does not exist yet
    (rolling deploy before the schema catches up).
    """
    now = now or utcnow()
    day = now.date()
    device = (device or "unknown").strip().lower()[:20] or "unknown"

    key = (
        BasicPageViewAggregate.date == day,
        BasicPageViewAggregate.path == path,
        BasicPageViewAggregate.device_category == device,
    )

    async def _increment() -> int | None:
        result = await db.execute(
            update(BasicPageViewAggregate)
            .where(*key)
            .values(count=BasicPageViewAggregate.count + 1, last_seen_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if not result.rowcount:
            return None
        return (
            await db.execute(select(BasicPageViewAggregate.count).where(*key))
        ).scalar_one()

    try:
        count = await _increment()
        if count is None:
            try:
                async with db.begin_nested():
                    db.add(BasicPageViewAggregate(
                        date=day,
                        path=path,
                        device_category=device,
                        count=1,
                        last_seen_at=now,
                    ))
                count = 1
            except IntegrityError:
                # Another ping created the row first; bump it instead.
                count = await _increment()
        await db.commit()
        return count
    except (OperationalError, ProgrammingError) as e:
        await db.rollback()
        if is_missing_table(e):
            logger.warning("basic_page_view_aggregates table missing — ping dropped")
            return None
        raise

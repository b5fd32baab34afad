"""
Aggregation — daily and weekly rollups of the raw tracking tables.

Daily rollups are computed from the raw rows once per calendar day; the
weekly rollup combines the seven stored daily rows.  Neither is ever
overwritten, so the retention job can delete the raw rows afterwards and
still keep a summary for the dashboard.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.models.aggregates import DailyAggregate, WeeklyAggregate
from api.models.tracking import AnalyticsSession, ScrollEvent, SectionEvent, Visit

logger = logging.getLogger(__name__)

# ── tunables ──
BOUNCE_THRESHOLD_MS = 10_000      # visit shorter than this → bounce
COMPLETED_THRESHOLD_MS = 60_000   # visit longer than this → completed
FULL_SCROLL_PERCENT = 100


# ─────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────

def day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC ``[00:00, next 00:00)`` for a calendar day."""
    if isinstance(day, datetime):
        day = day.date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def iso_week_start(year: int, week: int) -> date:
    """Monday of ISO ``year``-W``week``."""
    return date.fromisocalendar(year, week, 1)


def _mean(values) -> float:
    values = list(values)
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


async def load_window(
    db: AsyncSession,
    start: datetime | None,
    end: datetime | None,
) -> tuple[list[AnalyticsSession], list[Visit], list[ScrollEvent], list[SectionEvent]]:
    """Sessions created in ``[start, end)`` plus all their visits and events."""
    stmt = select(AnalyticsSession).options(selectinload(AnalyticsSession.visits))
    if start is not None:
        stmt = stmt.where(AnalyticsSession.created_at >= start)
    if end is not None:
        stmt = stmt.where(AnalyticsSession.created_at < end)

    sessions = list((await db.execute(stmt)).scalars().all())
    visits = [v for s in sessions for v in s.visits]
    visit_ids = [v.id for v in visits]

    if not visit_ids:
        return sessions, visits, [], []

    scroll_events = list((
        await db.execute(select(ScrollEvent).where(ScrollEvent.visit_id.in_(visit_ids)))
    ).scalars().all())
    section_events = list((
        await db.execute(select(SectionEvent).where(SectionEvent.visit_id.in_(visit_ids)))
    ).scalars().all())
    return sessions, visits, scroll_events, section_events


def compute_metrics(
    sessions: list[AnalyticsSession],
    visits: list[Visit],
    scroll_events: list[ScrollEvent],
    section_events: list[SectionEvent],
) -> dict:
    """
    Summarise one window of raw tracking data.

    Durations only average visits that reported an end (``duration_ms > 0``)
    so tabs that never sent the end beacon don't drag the mean to zero.
    """
    ended = [v for v in visits if (v.duration_ms or 0) > 0]

    per_session: dict[str, int] = defaultdict(int)
    for v in ended:
        per_session[v.session_id] += v.duration_ms

    full_scroll = {e.visit_id for e in scroll_events if e.depth_percent >= FULL_SCROLL_PERCENT}

    sections: dict[str, list[int]] = defaultdict(list)
    for e in section_events:
        sections[e.section_name].append(e.duration_ms or 0)

    return {
        "total_sessions": len(sessions),
        "total_visits": len(visits),
        "avg_scroll_depth_percent": _mean(e.depth_percent for e in scroll_events),
        "avg_session_duration_ms": _mean(per_session.values()),
        "avg_time_on_page_ms": _mean(v.duration_ms for v in ended),
        "bounce_count": sum(1 for v in visits if (v.duration_ms or 0) < BOUNCE_THRESHOLD_MS),
        "completed_count": sum(
            1 for v in visits
            if (v.duration_ms or 0) > COMPLETED_THRESHOLD_MS or v.id in full_scroll
        ),
        "device_breakdown": dict(Counter(s.device_category or "Unknown" for s in sessions)),
        "browser_breakdown": dict(Counter(s.browser_family or "Unknown" for s in sessions)),
        "section_metrics": {
            name: {"views": len(durations), "avg_duration_ms": _mean(durations)}
            for name, durations in sections.items()
        },
    }


def _weighted_mean(pairs) -> float:
    """Mean of ``(value, weight)`` pairs; 0.0 when every weight is zero."""
    pairs = [(v or 0.0, w or 0) for v, w in pairs]
    total = sum(w for _, w in pairs)
    if not total:
        return 0.0
    return round(sum(v * w for v, w in pairs) / total, 2)


def combine_daily_rows(rows: list[DailyAggregate]) -> dict:
    """
    Merge stored daily rollups into one set of metrics.

    Counts are summed and breakdowns merged.  Scroll depth and time on page
    are weighted by visits, session duration by sessions, and each section's
    mean dwell by its views.
    """
    devices: Counter = Counter()
    browsers: Counter = Counter()
    section_views: Counter = Counter()
    section_dwell: dict[str, float] = defaultdict(float)

    for r in rows:
        devices.update(r.device_breakdown or {})
        browsers.update(r.browser_breakdown or {})
        for name, m in (r.section_metrics or {}).items():
            views = m.get("views", 0)
            section_views[name] += views
            section_dwell[name] += views * m.get("avg_duration_ms", 0.0)

    return {
        "total_sessions": sum(r.total_sessions or 0 for r in rows),
        "total_visits": sum(r.total_visits or 0 for r in rows),
        "avg_scroll_depth_percent": _weighted_mean(
            (r.avg_scroll_depth_percent, r.total_visits) for r in rows
        ),
        "avg_session_duration_ms": _weighted_mean(
            (r.avg_session_duration_ms, r.total_sessions) for r in rows
        ),
        "avg_time_on_page_ms": _weighted_mean(
            (r.avg_time_on_page_ms, r.total_visits) for r in rows
        ),
        "bounce_count": sum(r.bounce_count or 0 for r in rows),
        "completed_count": sum(r.completed_count or 0 for r in rows),
        "device_breakdown": dict(devices),
        "browser_breakdown": dict(browsers),
        "section_metrics": {
            name: {
                "views": views,
                "avg_duration_ms": round(section_dwell[name] / views, 2) if views else 0.0,
            }
            for name, views in section_views.items()
        },
    }


# ─────────────────────────────────────────────────────────────────────
# core
# ─────────────────────────────────────────────────────────────────────

async def aggregate_for_date(db: AsyncSession, day: date) -> DailyAggregate | None:
    """
    Write the DailyAggregate for ``day`` unless it already exists.

    Returns the new row, the existing row, or ``None`` when there were no
    sessions that day (nothing is written).
    """
    if isinstance(day, datetime):
        day = day.date()

    existing = (
        await db.execute(select(DailyAggregate).where(DailyAggregate.date == day))
    ).scalar_one_or_none()
    if existing:
        logger.info("⏭️  %s already aggregated — skip", day)
        return existing

    start, end = day_bounds(day)
    sessions, visits, scrolls, sections = await load_window(db, start, end)
    if not sessions:
        logger.info("No sessions to aggregate for %s", day)
        return None

    row = DailyAggregate(date=day, **compute_metrics(sessions, visits, scrolls, sections))
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("%s was aggregated concurrently — keeping the existing row", day)
        return (
            await db.execute(select(DailyAggregate).where(DailyAggregate.date == day))
        ).scalar_one_or_none()

    logger.info(
        "📊 Aggregated %s — %d sessions, %d visits",
        day, row.total_sessions, row.total_visits,
    )
    return row


async def aggregate_for_week(db: AsyncSession, year: int, week: int) -> WeeklyAggregate | None:
    """
    Write the WeeklyAggregate for ISO ``year``-W``week`` from its stored
    DailyAggregate rows.

    Raw sessions are garbage-collected as soon as they expire, so by the end
    of the week only the daily rollups still cover all seven days.  Returns
    the new row, the existing row, or ``None`` when no day of the week was
    aggregated.
    """
    existing = (
        await db.execute(
            select(WeeklyAggregate).where(
                WeeklyAggregate.year == year,
                WeeklyAggregate.week_number == week,
            )
        )
    ).scalar_one_or_none()
    if existing:
        logger.info("⏭️  %d-W%02d already aggregated — skip", year, week)
        return existing

    monday = iso_week_start(year, week)
    days = list((
        await db.execute(
            select(DailyAggregate)
            .where(
                DailyAggregate.date >= monday,
                DailyAggregate.date < monday + timedelta(days=7),
            )
            .order_by(DailyAggregate.date)
        )
    ).scalars().all())
    if not days:
        logger.info("No daily rollups to combine for %d-W%02d", year, week)
        return None

    row = WeeklyAggregate(
        year=year,
        week_number=week,
        week_start_date=monday,
        **combine_daily_rows(days),
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return (
            await db.execute(
                select(WeeklyAggregate).where(
                    WeeklyAggregate.year == year,
                    WeeklyAggregate.week_number == week,
                )
            )
        ).scalar_one_or_none()

    logger.info(
        "📊 Aggregated %d-W%02d — %d sessions, %d visits",
        year, week, row.total_sessions, row.total_visits,
    )
    return row

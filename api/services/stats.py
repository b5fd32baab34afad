"""
Stats — dashboard numbers computed live from the raw tracking tables.

Aggregate tables are not consulted: once retention has purged
a date range, that range reads as empty here.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from api.models.aggregates import BasicPageViewAggregate
from api.models.tracking import AnalyticsSession, Visit
from api.services.aggregation import compute_metrics, load_window
from api.services.session_service import as_utc, utcnow
from api.services.tracking import is_missing_table

logger = logging.getLogger(__name__)

PERIODS = ("today", "week", "month", "custom", "all")


def _parse_date(value: str | date, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be YYYY-MM-DD, got {value!r}")


def resolve_window(
    period: str,
    start_date: str | date | None = None,
    end_date: str | date | None = None,
    now: datetime | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Turn a dashboard period into a UTC ``[start, end)`` window."""
    now = now or utcnow()
    today = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    tomorrow = today + timedelta(days=1)

    if period == "today":
        return today, tomorrow
    if period == "week":
        return today - timedelta(days=6), tomorrow
    if period == "month":
        return today - timedelta(days=29), tomorrow
    if period == "all":
        return None, None
    if period == "custom":
        if not start_date or not end_date:
            raise ValueError("custom period needs startDate and endDate")
        start = _parse_date(start_date, "startDate")
        end = _parse_date(end_date, "endDate")
        if start > end:
            raise ValueError("startDate must not be after endDate")
        return (
            datetime.combine(start, time.min, tzinfo=timezone.utc),
            datetime.combine(end, time.min, tzinfo=timezone.utc) + timedelta(days=1),
        )
    raise ValueError(f"Unknown period {period!r} (expected one of {', '.join(PERIODS)})")


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


async def basic_page_view_summary(
    db: AsyncSession,
    start: datetime | None,
    end: datetime | None,
) -> dict:
    """Totals from the cookieless counter. Missing table → empty summary."""
    summary = {"total": 0, "byPath": {}, "byDevice": {}, "daily": []}

    stmt = select(BasicPageViewAggregate)
    if start is not None:
        stmt = stmt.where(BasicPageViewAggregate.date >= start.date())
    if end is not None:
        stmt = stmt.where(BasicPageViewAggregate.date < end.date())

    try:
        rows = (await db.execute(stmt)).scalars().all()
    except (OperationalError, ProgrammingError) as e:
        await db.rollback()
        if is_missing_table(e):
            logger.warning("basic_page_view_aggregates table missing — empty summary")
            return summary
        raise

    by_path: Counter = Counter()
    by_device: Counter = Counter()
    by_day: Counter = Counter()
    for r in rows:
        by_path[r.path] += r.count
        by_device[r.device_category] += r.count
        by_day[r.date.isoformat()] += r.count

    summary["total"] = sum(by_path.values())
    summary["byPath"] = dict(by_path.most_common())
    summary["byDevice"] = dict(by_device.most_common())
    summary["daily"] = [{"date": d, "views": n} for d, n in sorted(by_day.items())]
    return summary


async def compute_stats(
    db: AsyncSession,
    period: str = "week",
    start_date: str | date | None = None,
    end_date: str | date | None = None,
    now: datetime | None = None,
    recent_limit: int = 10,
) -> dict:
    """
    Build the dashboard document for one window.

    Raises ``ValueError`` for an unknown period or malformed custom range.
    """
    start, end = resolve_window(period, start_date, end_date, now)

    sessions, visits, scrolls, sections = await load_window(db, start, end)
    metrics = compute_metrics(sessions, visits, scrolls, sections)

    # Daily trend: sessions per UTC day
    trend: dict[str, int] = defaultdict(int)
    for s in sessions:
        trend[as_utc(s.created_at).date().isoformat()] += 1

    recent_stmt = (
        select(Visit)
        .join(AnalyticsSession, Visit.session_id == AnalyticsSession.session_id)
        .order_by(Visit.started_at.desc())
        .limit(recent_limit)
    )
    if start is not None:
        recent_stmt = recent_stmt.where(AnalyticsSession.created_at >= start)
    if end is not None:
        recent_stmt = recent_stmt.where(AnalyticsSession.created_at < end)
    recent = (await db.execute(recent_stmt)).scalars().all()

    section_metrics = metrics["section_metrics"]
    top_section = max(
        section_metrics,
        key=lambda name: section_metrics[name]["views"] * section_metrics[name]["avg_duration_ms"],
        default="N/A",
    )

    total_visits = metrics["total_visits"]
    return {
        "period": period,
        "range": {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        },
        "totalSessions": metrics["total_sessions"],
        "totalVisits": total_visits,
        "avgScrollDepth": metrics["avg_scroll_depth_percent"],
        "avgVisitDurationMs": metrics["avg_time_on_page_ms"],
        "avgSessionDurationMs": metrics["avg_session_duration_ms"],
        "avgTimeSeconds": int(metrics["avg_time_on_page_ms"] // 1000),
        "bounceCount": metrics["bounce_count"],
        "completedCount": metrics["completed_count"],
        "bounceRate": _percent(metrics["bounce_count"], total_visits),
        "completionRate": _percent(metrics["completed_count"], total_visits),
        "deviceBreakdown": metrics["device_breakdown"],
        "browserBreakdown": metrics["browser_breakdown"],
        "sectionMetrics": section_metrics,
        "topSection": top_section,
        "recentVisits": [v.to_dict() for v in recent],
        "dailyTrend": [{"date": d, "sessions": n} for d, n in sorted(trend.items())],
        "basicPageViews": await basic_page_view_summary(db, start, end),
    }

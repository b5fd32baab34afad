"""
Data Retention — nightly rollup + purge.

Every night at ``settings.retention_hour_utc`` (02:00 UTC by default) the
job aggregates yesterday's raw data, then enforces the retention windows:

    raw sessions / visits / events     14 days   (cascade via sessions)
    daily + weekly aggregates          30 days
    cookieless page-view counters     365 days
    expired sessions                   immediately after expiry

Each step runs in its own DB session and its own try/except — one failing
step is logged and the rest still run.  If anything escapes the cycle the
loop logs it, waits ``settings.retention_retry_seconds`` and carries on; it
never takes the API process down.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from api.config import settings

logger = logging.getLogger("analytics.retention")


# ─────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────

def seconds_until_next_run(now: datetime | None = None, hour: int | None = None) -> float:
    """Seconds from *now* until the next ``hour:00`` UTC."""
    now = now or datetime.now(timezone.utc)
    hour = settings.retention_hour_utc if hour is None else hour
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


# ─────────────────────────────────────────────────────────────────────
# steps
# ─────────────────────────────────────────────────────────────────────

async def _aggregate_yesterday(session_factory, now: datetime) -> dict:
    from api.services.aggregation import aggregate_for_date, aggregate_for_week

    yesterday = (now - timedelta(days=1)).date()
    result = {"daily": None, "weekly": None}

    async with session_factory() as session:
        row = await aggregate_for_date(session, yesterday)
        result["daily"] = str(row.date) if row else None

        # Yesterday was a Sunday → its ISO week is complete.
        if yesterday.isoweekday() == 7:
            year, week, _ = yesterday.isocalendar()
            weekly = await aggregate_for_week(session, year, week)
            result["weekly"] = f"{weekly.year}-W{weekly.week_number:02d}" if weekly else None

    return result


async def _delete_old_sessions(session_factory, now: datetime) -> int:
    from api.models.tracking import AnalyticsSession

    cutoff = now - timedelta(days=settings.raw_retention_days)
    async with session_factory() as session:
        result = await session.execute(
            delete(AnalyticsSession).where(AnalyticsSession.created_at < cutoff)
        )
        await session.commit()
    count = result.rowcount or 0
    if count:
        logger.info(
            "🧹 Deleted %d sessions older than %d days",
            count, settings.raw_retention_days,
        )
    return count


async def _delete_old_aggregates(session_factory, now: datetime) -> int:
    from api.models.aggregates import DailyAggregate, WeeklyAggregate

    cutoff = (now - timedelta(days=settings.aggregate_retention_days)).date()
    async with session_factory() as session:
        daily = await session.execute(
            delete(DailyAggregate).where(DailyAggregate.date < cutoff)
        )
        weekly = await session.execute(
            delete(WeeklyAggregate).where(WeeklyAggregate.week_start_date < cutoff)
        )
        await session.commit()
    count = (daily.rowcount or 0) + (weekly.rowcount or 0)
    if count:
        logger.info(
            "🧹 Deleted %d daily + %d weekly aggregates older than %d days",
            daily.rowcount or 0, weekly.rowcount or 0, settings.aggregate_retention_days,
        )
    return count


async def _delete_old_basic_page_views(session_factory, now: datetime) -> int:
    from api.models.aggregates import BasicPageViewAggregate

    cutoff = (now - timedelta(days=settings.basic_page_view_retention_days)).date()
    async with session_factory() as session:
        result = await session.execute(
            delete(BasicPageViewAggregate).where(BasicPageViewAggregate.date < cutoff)
        )
        await session.commit()
    count = result.rowcount or 0
    if count:
        logger.info(
            "🧹 Deleted %d basic page-view counters older than %d days",
            count, settings.basic_page_view_retention_days,
        )
    return count


async def _delete_expired_sessions(session_factory, now: datetime) -> int:
    from api.models.tracking import AnalyticsSession

    async with session_factory() as session:
        result = await session.execute(
            delete(AnalyticsSession).where(AnalyticsSession.expires_at < now)
        )
        await session.commit()
    count = result.rowcount or 0
    if count:
        logger.info("🧹 Deleted %d expired sessions", count)
    return count


_STEPS = (
    ("aggregated", _aggregate_yesterday),
    ("old_sessions", _delete_old_sessions),
    ("old_aggregates", _delete_old_aggregates),
    ("old_basic_page_views", _delete_old_basic_page_views),
    ("expired_sessions", _delete_expired_sessions),
)


# ─────────────────────────────────────────────────────────────────────
# core
# ─────────────────────────────────────────────────────────────────────

async def run_retention_cycle(now: datetime | None = None) -> dict:
    """
    Run one full rollup + purge pass.

    Returns a dict keyed by step name.  A failed step maps to ``None``.
    """
    from api.database import async_session_factory

    now = now or datetime.now(timezone.utc)
    logger.info("🧹 Data retention cleanup starting (%s)", now.isoformat())

    results: dict = {}
    for name, step in _STEPS:
        try:
            results[name] = await step(async_session_factory, now)
        except Exception as e:
            logger.error("❌ Retention step '%s' failed: %s", name, e)
            results[name] = None

    logger.info("🧹 Data retention cleanup complete — %s", results)
    return results


async def catch_up_if_needed(now: datetime | None = None) -> dict | None:
    """
    Called once at server startup.  If yesterday has no DailyAggregate yet
    (server was down at 02:00), aggregate it now so the day isn't lost when
    the raw rows age out.
    """
    now = now or datetime.now(timezone.utc)
    yesterday = (now - timedelta(days=1)).date()
    try:
        from api.database import async_session_factory
        from api.models.aggregates import DailyAggregate

        async with async_session_factory() as session:
            exists = (
                await session.execute(
                    select(DailyAggregate.id).where(DailyAggregate.date == yesterday)
                )
            ).scalar_one_or_none()

        if exists:
            logger.info("✅ Aggregate for %s already present — no catch-up needed", yesterday)
            return None

        logger.info("⚠️  No aggregate for %s — running catch-up now", yesterday)
        return await _aggregate_yesterday(async_session_factory, now)
    except Exception as e:
        logger.error("Catch-up check failed: %s", e)
        return None


async def retention_loop() -> None:
    """Long-lived background task: sleep until the nightly slot, clean up, repeat."""
    logger.info("Data retention loop started")
    while True:
        try:
            delay = seconds_until_next_run()
            next_run = datetime.now(timezone.utc) + timedelta(seconds=delay)
            logger.info("Next cleanup scheduled for %s UTC", next_run.strftime("%Y-%m-%d %H:%M"))
            await asyncio.sleep(delay)
            await run_retention_cycle()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Data retention loop error: %s — retrying in %ds", e, settings.retention_retry_seconds)
            try:
                await asyncio.sleep(settings.retention_retry_seconds)
            except asyncio.CancelledError:
                break

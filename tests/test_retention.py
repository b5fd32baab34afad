"""
Tests for the retention job.

Verifies:
- yesterday is aggregated before raw rows are purged
- raw sessions past the retention window are deleted with their children
- aggregates / cookieless counters are purged on their own windows
- expired sessions are garbage-collected regardless of age
- a failing step does not stop the others
- the loop survives a failing cycle and backs off
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from sqlalchemy import func, select

from api.models.aggregates import BasicPageViewAggregate, DailyAggregate, WeeklyAggregate
from api.models.tracking import AnalyticsSession, ScrollEvent, SectionEvent, Visit
from api.services import retention
from api.services.retention import (
    catch_up_if_needed,
    retention_loop,
    run_retention_cycle,
    seconds_until_next_run,
)

NOW = datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)   # Wednesday 02:00 UTC
LONG_LIVED = timedelta(days=60)


async def _count(factory, model) -> int:
    async with factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ── helpers ──────────────────────────────────────────────

class TestSecondsUntilNextRun:
    def test_later_today(self):
        now = datetime(2026, 3, 11, 1, 30, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, hour=2) == 30 * 60

    def test_already_past_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 11, 3, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, hour=2) == 23 * 3600

    def test_exactly_on_time_waits_a_day(self):
        assert seconds_until_next_run(NOW, hour=2) == 24 * 3600

    def test_uses_configured_hour(self, mock_settings):
        mock_settings.retention_hour_utc = 4
        now = datetime(2026, 3, 11, 3, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now) == 3600


# ── cycle ────────────────────────────────────────────────

class TestRunRetentionCycle:
    async def test_raw_retention_window(self, db_session_factory, make_session, make_visit):
        old = await make_session("old", created_at=NOW - timedelta(days=15), expires_in=LONG_LIVED)
        await make_visit(old, "/", duration_ms=5_000, scrolls=(25,), sections=(("hero", 2000),))
        await make_session("recent", created_at=NOW - timedelta(days=13), expires_in=LONG_LIVED)

        with patch("api.database.async_session_factory", db_session_factory):
            result = await run_retention_cycle(now=NOW)

        assert result["old_sessions"] == 1
        async with db_session_factory() as session:
            ids = (await session.execute(select(AnalyticsSession.session_id))).scalars().all()
        assert ids == ["recent"]

        # children went with the session
        assert await _count(db_session_factory, Visit) == 0
        assert await _count(db_session_factory, ScrollEvent) == 0
        assert await _count(db_session_factory, SectionEvent) == 0

    async def test_aggregates_yesterday_before_purge(self, db_session_factory, make_session, make_visit):
        s = await make_session("y1", created_at=NOW - timedelta(hours=10))
        await make_visit(s, "/home", duration_ms=45_000, scrolls=(25, 100))

        with patch("api.database.async_session_factory", db_session_factory):
            result = await run_retention_cycle(now=NOW)

        assert result["aggregated"]["daily"] == "2026-03-10"
        async with db_session_factory() as session:
            row = (await session.execute(select(DailyAggregate))).scalar_one()
        assert row.date == date(2026, 3, 10)
        assert row.total_sessions == 1
        assert row.completed_count == 1

    async def test_weekly_rollup_survives_nightly_purges(
        self, db_session_factory, make_session, make_visit,
    ):
        """One short-lived session per day; each night's cycle purges the expired ones."""
        monday = datetime(2026, 3, 9, 10, 0, tzinfo=timezone.utc)

        with patch("api.database.async_session_factory", db_session_factory):
            for i in range(7):
                created = monday + timedelta(days=i)
                s = await make_session(f"day{i}", created_at=created)
                await make_visit(s, "/", duration_ms=(i + 1) * 10_000)

                next_night = created.replace(hour=2) + timedelta(days=1)
                result = await run_retention_cycle(now=next_night)

        assert result["aggregated"]["weekly"] == "2026-W11"
        assert await _count(db_session_factory, AnalyticsSession) == 0
        assert await _count(db_session_factory, DailyAggregate) == 7

        async with db_session_factory() as session:
            weekly = (await session.execute(select(WeeklyAggregate))).scalar_one()
        assert weekly.total_sessions == 7
        assert weekly.total_visits == 7
        assert weekly.avg_time_on_page_ms == 40_000       # mean of 10s..70s
        assert weekly.bounce_count == 0
        assert weekly.completed_count == 1                 # only the 70s visit

    async def test_old_aggregates_deleted(self, db_session_factory, db_session):
        db_session.add_all([
            DailyAggregate(date=date(2026, 1, 1)),
            DailyAggregate(date=date(2026, 3, 1)),
            WeeklyAggregate(year=2026, week_number=1, week_start_date=date(2025, 12, 29)),
            WeeklyAggregate(year=2026, week_number=9, week_start_date=date(2026, 2, 23)),
        ])
        await db_session.commit()

        with patch("api.database.async_session_factory", db_session_factory):
            result = await run_retention_cycle(now=NOW)

        assert result["old_aggregates"] == 2
        async with db_session_factory() as session:
            days = (await session.execute(select(DailyAggregate.date))).scalars().all()
            weeks = (await session.execute(select(WeeklyAggregate.week_number))).scalars().all()
        assert days == [date(2026, 3, 1)]
        assert weeks == [9]

    async def test_basic_page_views_kept_for_a_year(self, db_session_factory, db_session):
        db_session.add_all([
            BasicPageViewAggregate(date=date(2025, 3, 1), path="/", device_category="mobile", count=4),
            BasicPageViewAggregate(date=date(2025, 4, 1), path="/", device_category="mobile", count=2),
        ])
        await db_session.commit()

        with patch("api.database.async_session_factory", db_session_factory):
            result = await run_retention_cycle(now=NOW)

        assert result["old_basic_page_views"] == 1
        async with db_session_factory() as session:
            kept = (await session.execute(select(BasicPageViewAggregate.date))).scalars().all()
        assert kept == [date(2025, 4, 1)]

    async def test_expired_sessions_collected(self, db_session_factory, make_session):
        await make_session("abandoned", created_at=NOW - timedelta(hours=3))
        await make_session("live", created_at=NOW - timedelta(minutes=5))

        with patch("api.database.async_session_factory", db_session_factory):
            result = await run_retention_cycle(now=NOW)

        assert result["expired_sessions"] == 1
        async with db_session_factory() as session:
            ids = (await session.execute(select(AnalyticsSession.session_id))).scalars().all()
        assert ids == ["live"]

    async def test_failing_step_does_not_stop_others(self, db_session_factory, make_session):
        await make_session("abandoned", created_at=NOW - timedelta(hours=3))

        with (
            patch("api.database.async_session_factory", db_session_factory),
            patch(
                "api.services.aggregation.aggregate_for_date",
                new_callable=AsyncMock,
                side_effect=RuntimeError("DB hiccup"),
            ),
        ):
            result = await run_retention_cycle(now=NOW)

        assert result["aggregated"] is None
        assert result["expired_sessions"] == 1
        assert await _count(db_session_factory, AnalyticsSession) == 0


# ── startup catch-up ─────────────────────────────────────

class TestCatchUp:
    async def test_runs_when_missing(self, db_session_factory, make_session, make_visit):
        s = await make_session("y1", created_at=NOW - timedelta(hours=10))
        await make_visit(s, "/", duration_ms=12_000)

        with patch("api.database.async_session_factory", db_session_factory):
            result = await catch_up_if_needed(now=NOW)

        assert result["daily"] == "2026-03-10"
        assert await _count(db_session_factory, DailyAggregate) == 1

    async def test_noop_when_present(self, db_session_factory, db_session):
        db_session.add(DailyAggregate(date=date(2026, 3, 10)))
        await db_session.commit()

        with patch("api.database.async_session_factory", db_session_factory):
            assert await catch_up_if_needed(now=NOW) is None

    async def test_swallows_errors(self):
        with patch("api.database.async_session_factory", side_effect=RuntimeError("no db")):
            assert await catch_up_if_needed(now=NOW) is None


# ── loop ─────────────────────────────────────────────────

class TestRetentionLoop:
    async def test_failed_cycle_backs_off_then_resumes(self, mock_settings):
        sleeps = []

        async def _fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) >= 3:
                raise asyncio.CancelledError

        with (
            patch.object(retention.asyncio, "sleep", side_effect=_fake_sleep),
            patch.object(retention, "seconds_until_next_run", return_value=42.0),
            patch.object(
                retention, "run_retention_cycle",
                new_callable=AsyncMock, side_effect=RuntimeError("boom"),
            ) as cycle,
        ):
            await retention_loop()

        # scheduled wait → cycle fails → back-off → next scheduled wait (cancelled)
        assert sleeps == [42.0, 3600, 42.0]
        assert cycle.await_count == 1

    async def test_cancel_during_wait_stops_loop(self):
        with (
            patch.object(retention.asyncio, "sleep", side_effect=asyncio.CancelledError),
            patch.object(retention, "run_retention_cycle", new_callable=AsyncMock) as cycle,
        ):
            await retention_loop()

        cycle.assert_not_awaited()

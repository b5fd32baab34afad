"""
Portfolio Analytics — derived summary tables.

Daily/weekly rollups are written once by the aggregation job and never
updated.  The basic page-view counter is the cookieless fallback used when
a visitor declines tracking: (date, path, device) → count, nothing else.
None of these tables reference the raw tracking rows.
"""

import datetime as dt
from datetime import datetime, timezone

from sqlalchemy import Date, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from api.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _RollupMetrics:
    """Columns shared by the daily and weekly rollups."""

    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    total_visits: Mapped[int] = mapped_column(Integer, default=0)

    avg_scroll_depth_percent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_session_duration_ms: Mapped[float] = mapped_column(Float, default=0.0)
    avg_time_on_page_ms: Mapped[float] = mapped_column(Float, default=0.0)

    bounce_count: Mapped[int] = mapped_column(Integer, default=0)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)

    # {"Desktop": 3, "Mobile": 1}
    device_breakdown: Mapped[dict] = mapped_column(JSON, default=dict)
    # {"Chrome": 2, "Firefox": 2}
    browser_breakdown: Mapped[dict] = mapped_column(JSON, default=dict)
    # {"hero": {"views": 4, "avg_duration_ms": 3250.0}}
    section_metrics: Mapped[dict] = mapped_column(JSON, default=dict)

    aggregated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def metrics_dict(self) -> dict:
        return {
            "total_sessions": self.total_sessions,
            "total_visits": self.total_visits,
            "avg_scroll_depth_percent": self.avg_scroll_depth_percent,
            "avg_session_duration_ms": self.avg_session_duration_ms,
            "avg_time_on_page_ms": self.avg_time_on_page_ms,
            "bounce_count": self.bounce_count,
            "completed_count": self.completed_count,
            "device_breakdown": self.device_breakdown or {},
            "browser_breakdown": self.browser_breakdown or {},
            "section_metrics": self.section_metrics or {},
        }


class DailyAggregate(_RollupMetrics, Base):
    __tablename__ = "daily_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, unique=True, nullable=False)

    def __repr__(self):
        return f"<DailyAggregate {self.date} ({self.total_sessions} sessions)>"


class WeeklyAggregate(_RollupMetrics, Base):
    __tablename__ = "weekly_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    week_start_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("year", "week_number", name="uq_weekly_year_week"),
    )

    def __repr__(self):
        return f"<WeeklyAggregate {self.year}-W{self.week_number:02d} ({self.total_sessions} sessions)>"


class BasicPageViewAggregate(Base):
    """Cookieless page-view counter — no per-visitor identity at all."""
    __tablename__ = "basic_page_view_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    device_category: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    count: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("date", "path", "device_category", name="uq_basic_pv_date_path_device"),
    )

    def __repr__(self):
        return f"<BasicPageViewAggregate {self.date} {self.path} [{self.device_category}] = {self.count}>"

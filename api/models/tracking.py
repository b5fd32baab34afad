"""
Portfolio Analytics — raw tracking tables.

Session → Visit → ScrollEvent / SectionEvent.  Every child row is
foreign-keyed with ON DELETE CASCADE so the retention job can drop whole
sessions with one statement.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from api.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsSession(Base):
    """Anonymous browsing session keyed by the client's opaque token."""
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    # Coarse only, no versions or OS
    device_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    browser_family: Mapped[str | None] = mapped_column(String(50), nullable=True)

    visits: Mapped[list["Visit"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Visit.started_at",
    )

    def __repr__(self):
        return f"<AnalyticsSession {self.session_id} ({self.device_category}/{self.browser_family})>"


class Visit(Base):
    """One page view inside a session."""
    __tablename__ = "visits"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.session_id", ondelete="CASCADE"), index=True
    )
    page: Mapped[str] = mapped_column(String(500), nullable=False)
    referrer: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    duration_ms: Mapped[int] = mapped_column(BigInteger, default=0)

    session: Mapped["AnalyticsSession"] = relationship(back_populates="visits")
    scroll_events: Mapped[list["ScrollEvent"]] = relationship(
        back_populates="visit", cascade="all, delete-orphan", passive_deletes=True
    )
    section_events: Mapped[list["SectionEvent"]] = relationship(
        back_populates="visit", cascade="all, delete-orphan", passive_deletes=True
    )

    def to_dict(self) -> dict:
        return {
            "visitId": self.id,
            "page": self.page,
            "referrer": self.referrer,
            "timestamp": self.started_at.isoformat() if self.started_at else None,
            "durationSeconds": (self.duration_ms or 0) // 1000,
        }

    def __repr__(self):
        return f"<Visit {self.id} {self.page} ({self.duration_ms}ms)>"


class ScrollEvent(Base):
    """A scroll milestone (25/50/75/100) reached during a visit."""
    __tablename__ = "scroll_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    visit_id: Mapped[str] = mapped_column(
        ForeignKey("visits.id", ondelete="CASCADE"), index=True
    )
    depth_percent: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )

    visit: Mapped["Visit"] = relationship(back_populates="scroll_events")

    __table_args__ = (
        UniqueConstraint("visit_id", "depth_percent", name="uq_scroll_visit_depth"),
    )


class SectionEvent(Base):
    """Dwell time on one named page section."""
    __tablename__ = "section_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    visit_id: Mapped[str] = mapped_column(
        ForeignKey("visits.id", ondelete="CASCADE"), index=True
    )
    section_name: Mapped[str] = mapped_column(String(100), nullable=False)
    duration_ms: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    visit: Mapped["Visit"] = relationship(back_populates="section_events")

    __table_args__ = (
        Index("ix_section_events_name_created", "section_name", "created_at"),
    )

"""
Aggregate summary models.

Rolling counters maintained incrementally from the audit log.
A day is open until rollover recounts and closes it; a day left
half-rebuilt by a cancelled backfill is flagged stale.
"""

from datetime import date, datetime

from sqlalchemy import String, Date, DateTime, Integer, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from audit_engine.models.base import Base


class DailySummary(Base):
    __tablename__ = "daily_summaries"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    severity_low: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    severity_medium: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    severity_high: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    severity_critical: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        if self.stale:
            state = "stale"
        return f"<DailySummary {self.day} total={self.total} ({state})>"


class DailyActionCount(Base):
    __tablename__ = "daily_action_counts"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    action: Mapped[str] = mapped_column(String(200), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DailyActorCount(Base):
    __tablename__ = "daily_actor_counts"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    actor_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    actor_name: Mapped[str] = mapped_column(String(200), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

"""
Aggregation service — rolling summaries over the audit log.

observe() folds each entry into per-day counters as it arrives,
so queries read counters and never rescan the raw log. Counters
for a day that is still open may lag; rollover recounts each
finished day from the log once and closes it, after which the
day is exact.

A backfill first marks every day in its range stale and clears
the flag only on the days it finishes, so a cancelled backfill
leaves the unfinished days visibly stale.
"""

import heapq
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from audit_engine.config import Settings, get_settings
from audit_engine.errors import ValidationError
from audit_engine.models.aggregate import (
    DailySummary,
    DailyActionCount,
    DailyActorCount,
)
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.base import utcnow
from audit_engine.models.consumer_cursor import ConsumerCursor
from audit_engine.models.enums import Outcome, Severity

logger = logging.getLogger(__name__)

CURSOR_NAME = "aggregation"

GROUP_BY_OPTIONS = ("day", "status", "severity", "action", "actor")

OUTCOME_FIELDS = {
    Outcome.SUCCESS: "success",
    Outcome.FAILED: "failed",
    Outcome.WARNING: "warning",
}

SEVERITY_FIELDS = {
    Severity.LOW: "severity_low",
    Severity.MEDIUM: "severity_medium",
    Severity.HIGH: "severity_high",
    Severity.CRITICAL: "severity_critical",
}


@dataclass
class DayCounts:
    """Counters for one day computed straight from the log."""
    total: int = 0
    outcomes: Counter = field(default_factory=Counter)
    severities: Counter = field(default_factory=Counter)
    actions: Counter = field(default_factory=Counter)
    actors: Counter = field(default_factory=Counter)
    actor_names: dict = field(default_factory=dict)


@dataclass
class BackfillResult:
    rebuilt_days: list[date] = field(default_factory=list)
    stale_days: list[date] = field(default_factory=list)
    cancelled: bool = False


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _by_count(row) -> tuple:
    """Sort key for (key, ..., count) rows: count first, key breaks ties."""
    return row[-1], row[0]


class AggregationService:

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    def _cursor(self) -> ConsumerCursor:
        cursor = self.db.get(ConsumerCursor, CURSOR_NAME)
        if cursor is None:
            cursor = ConsumerCursor(name=CURSOR_NAME, last_sequence_id=0)
            self.db.add(cursor)
            self.db.flush()
        return cursor

    def _summary(self, day: date) -> DailySummary:
        summary = self.db.get(DailySummary, day)
        if summary is None:
            summary = DailySummary(
                day=day, total=0, success=0, failed=0, warning=0,
                severity_low=0, severity_medium=0, severity_high=0,
                severity_critical=0, closed=False, stale=False,
            )
            self.db.add(summary)
        return summary

    # --- Incremental maintenance ---

    def observe(self, entry: AuditLogEntry) -> bool:
        """
        Fold one entry into its day's counters.

        Must be called in sequence order. Returns False for an
        entry at or below the watermark (a replay).
        """
        cursor = self._cursor()
        if entry.id <= cursor.last_sequence_id:
            return False

        day = entry.timestamp.date()
        summary = self._summary(day)
        if summary.closed:
            # Late arrival for a finished day; rollover recounts it.
            logger.warning(
                "entry arrived for a closed day, reopening",
                extra={"sequence_id": entry.id, "day": day.isoformat()},
            )
            summary.closed = False
            summary.closed_at = None

        summary.total += 1
        outcome_field = OUTCOME_FIELDS[entry.outcome]
        setattr(summary, outcome_field, getattr(summary, outcome_field) + 1)
        severity_field = SEVERITY_FIELDS[entry.severity]
        setattr(summary, severity_field, getattr(summary, severity_field) + 1)

        action_count = self.db.get(DailyActionCount, (day, entry.action))
        if action_count is None:
            action_count = DailyActionCount(day=day, action=entry.action, count=0)
            self.db.add(action_count)
        action_count.count += 1

        actor_count = self.db.get(DailyActorCount, (day, entry.actor_id))
        if actor_count is None:
            actor_count = DailyActorCount(
                day=day, actor_id=entry.actor_id, actor_name=entry.actor_name, count=0
            )
            self.db.add(actor_count)
        actor_count.count += 1

        cursor.last_sequence_id = entry.id
        self.db.flush()
        return True

    # --- Queries ---

    def query(self, start: date, end: date, group_by: str = "day") -> dict:
        """Summarize the inclusive day range [start, end] from counters only."""
        if group_by not in GROUP_BY_OPTIONS:
            raise ValidationError(
                f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}"
            )
        if end < start:
            raise ValidationError("range end must not be before its start")

        top_n = self.settings.TOP_N
        summaries = self.db.execute(
            select(DailySummary)
            .where(DailySummary.day >= start, DailySummary.day <= end)
            .order_by(DailySummary.day)
        ).scalars().all()

        outcomes = Counter()
        severities = Counter()
        for s in summaries:
            for outcome, name in OUTCOME_FIELDS.items():
                outcomes[outcome.value] += getattr(s, name)
            for severity, name in SEVERITY_FIELDS.items():
                severities[severity.value] += getattr(s, name)

        action_rows = self.db.execute(
            select(DailyActionCount.action, func.sum(DailyActionCount.count))
            .where(DailyActionCount.day >= start, DailyActionCount.day <= end)
            .group_by(DailyActionCount.action)
        ).all()
        actor_rows = self.db.execute(
            select(
                DailyActorCount.actor_id,
                func.max(DailyActorCount.actor_name),
                func.sum(DailyActorCount.count),
            )
            .where(DailyActorCount.day >= start, DailyActorCount.day <= end)
            .group_by(DailyActorCount.actor_id)
        ).all()

        top_actions = heapq.nlargest(top_n, action_rows, key=_by_count)
        top_actors = heapq.nlargest(top_n, actor_rows, key=_by_count)

        if group_by == "day":
            groups = [(s.day.isoformat(), s.total) for s in summaries]
        elif group_by == "status":
            groups = [(o.value, outcomes[o.value]) for o in Outcome]
        elif group_by == "severity":
            groups = [(sev.value, severities[sev.value]) for sev in Severity]
        elif group_by == "action":
            groups = sorted(action_rows, key=_by_count, reverse=True)
        else:
            groups = [
                (actor_id, count)
                for actor_id, _, count in sorted(actor_rows, key=_by_count, reverse=True)
            ]

        return {
            "start": start,
            "end": end,
            "group_by": group_by,
            "total": sum(s.total for s in summaries),
            "success": outcomes[Outcome.SUCCESS.value],
            "failed": outcomes[Outcome.FAILED.value],
            "warning": outcomes[Outcome.WARNING.value],
            "unique_actors": len(actor_rows),
            "severity": {sev.value: severities[sev.value] for sev in Severity},
            "top_actions": [
                {"key": action, "count": count} for action, count in top_actions
            ],
            "top_actors": [
                {"actor_id": actor_id, "actor_name": name, "count": count}
                for actor_id, name, count in top_actors
            ],
            "groups": [{"key": str(key), "count": count} for key, count in groups],
            "days": [
                {"day": s.day, "total": s.total, "closed": s.closed, "stale": s.stale}
                for s in summaries
            ],
            "complete": bool(summaries) and all(s.closed and not s.stale for s in summaries),
            "stale": any(s.stale for s in summaries),
        }

    # --- Finalization ---

    def rescan(self, day: date) -> DayCounts:
        """
        Count one day straight from the log.

        Only entries already folded in (at or below the watermark)
        are counted, so later observe() calls do not double count.
        """
        start, end = day_bounds(day)
        watermark = self._cursor().last_sequence_id
        entries = self.db.execute(
            select(AuditLogEntry).where(
                AuditLogEntry.timestamp >= start,
                AuditLogEntry.timestamp < end,
                AuditLogEntry.id <= watermark,
            )
        ).scalars()

        counts = DayCounts()
        for entry in entries:
            counts.total += 1
            counts.outcomes[entry.outcome] += 1
            counts.severities[entry.severity] += 1
            counts.actions[entry.action] += 1
            counts.actors[entry.actor_id] += 1
            counts.actor_names[entry.actor_id] = entry.actor_name
        return counts

    def _rebuild(self, day: date, close: bool) -> DailySummary:
        counts = self.rescan(day)
        summary = self._summary(day)
        summary.total = counts.total
        for outcome, name in OUTCOME_FIELDS.items():
            setattr(summary, name, counts.outcomes[outcome])
        for severity, name in SEVERITY_FIELDS.items():
            setattr(summary, name, counts.severities[severity])

        existing_actions = self.db.execute(
            select(DailyActionCount).where(DailyActionCount.day == day)
        ).scalars().all()
        for row in existing_actions:
            if row.action in counts.actions:
                row.count = counts.actions.pop(row.action)
            else:
                self.db.delete(row)
        for action, count in counts.actions.items():
            self.db.add(DailyActionCount(day=day, action=action, count=count))

        existing_actors = self.db.execute(
            select(DailyActorCount).where(DailyActorCount.day == day)
        ).scalars().all()
        for row in existing_actors:
            if row.actor_id in counts.actors:
                row.count = counts.actors.pop(row.actor_id)
                row.actor_name = counts.actor_names[row.actor_id]
            else:
                self.db.delete(row)
        for actor_id, count in counts.actors.items():
            self.db.add(DailyActorCount(
                day=day,
                actor_id=actor_id,
                actor_name=counts.actor_names[actor_id],
                count=count,
            ))

        summary.stale = False
        summary.closed = close
        summary.closed_at = utcnow() if close else None
        self.db.flush()
        return summary

    def close_day(self, day: date, now: datetime | None = None) -> DailySummary:
        """Recount a finished day from the log and mark it exact."""
        today = (now or utcnow()).date()
        if day >= today:
            raise ValidationError(f"day {day.isoformat()} has not ended yet")
        summary = self._rebuild(day, close=True)
        logger.info(
            "aggregate day closed",
            extra={"day": day.isoformat(), "total": summary.total},
        )
        return summary

    def rollover(self, now: datetime | None = None) -> list[date]:
        """Close every open day before today. Returns the days closed."""
        today = (now or utcnow()).date()
        open_days = self.db.execute(
            select(DailySummary.day)
            .where(DailySummary.closed.is_(False), DailySummary.day < today)
            .order_by(DailySummary.day)
        ).scalars().all()
        for day in open_days:
            self.close_day(day, now)
        return list(open_days)

    def verify_day(self, day: date) -> bool:
        """True when the stored counters for `day` equal a full rescan."""
        summary = self.db.get(DailySummary, day)
        counts = self.rescan(day)
        if summary is None:
            return counts.total == 0

        if summary.total != counts.total:
            return False
        for outcome, name in OUTCOME_FIELDS.items():
            if getattr(summary, name) != counts.outcomes[outcome]:
                return False
        for severity, name in SEVERITY_FIELDS.items():
            if getattr(summary, name) != counts.severities[severity]:
                return False

        stored_actions = dict(self.db.execute(
            select(DailyActionCount.action, DailyActionCount.count)
            .where(DailyActionCount.day == day)
        ).all())
        stored_actors = dict(self.db.execute(
            select(DailyActorCount.actor_id, DailyActorCount.count)
            .where(DailyActorCount.day == day)
        ).all())
        return stored_actions == dict(counts.actions) and stored_actors == dict(counts.actors)

    def backfill(
        self,
        start: date,
        end: date,
        cancel: threading.Event | None = None,
        now: datetime | None = None,
    ) -> BackfillResult:
        """
        Rebuild the inclusive day range [start, end] from the log.

        Checks `cancel` before each day. Days not reached when it is
        set stay marked stale.
        """
        if end < start:
            raise ValidationError("range end must not be before its start")
        today = (now or utcnow()).date()
        days = [start + timedelta(days=i) for i in range((end - start).days + 1)]

        for day in days:
            summary = self._summary(day)
            summary.stale = True
            summary.closed = False
        self.db.flush()

        result = BackfillResult()
        for index, day in enumerate(days):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                result.stale_days = days[index:]
                logger.warning(
                    "aggregate backfill cancelled",
                    extra={
                        "rebuilt": len(result.rebuilt_days),
                        "stale": len(result.stale_days),
                    },
                )
                break
            self._rebuild(day, close=day < today)
            result.rebuilt_days.append(day)
        return result

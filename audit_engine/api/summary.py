"""
Audit summary API endpoints.

Summaries are read from the incrementally maintained counters;
these endpoints never scan the raw log.
"""

from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_current_actor, http_error
from audit_engine.errors import ValidationError
from audit_engine.models.base import get_db, utcnow
from audit_engine.schemas.audit import Actor
from audit_engine.schemas.summary import AuditSummaryResponse, BackfillResponse
from audit_engine.services.aggregation_service import AggregationService

router = APIRouter(tags=["Audit Summary"])

# Named ranges, as days back from today (inclusive).
NAMED_RANGES = {
    "today": 0,
    "7d": 6,
    "30d": 29,
    "90d": 89,
}


def resolve_range(
    range_name: str | None, start: date | None, end: date | None
) -> tuple[date, date]:
    today = utcnow().date()
    if start is not None or end is not None:
        return start or end, end or today
    name = range_name or "today"
    if name not in NAMED_RANGES:
        raise ValidationError(
            f"range must be one of {', '.join(NAMED_RANGES)} or explicit start/end"
        )
    return today - timedelta(days=NAMED_RANGES[name]), today


@router.get("/audit-summary", response_model=AuditSummaryResponse)
def audit_summary(
    range_name: str | None = Query(default=None, alias="range"),
    start: date | None = None,
    end: date | None = None,
    group_by: str = Query(default="day"),
    db: Session = Depends(get_db),
):
    try:
        first, last = resolve_range(range_name, start, end)
        return AggregationService(db).query(first, last, group_by)
    except ValueError as e:
        raise http_error(e)


@router.post("/audit-summary/backfill", response_model=BackfillResponse)
def backfill_summary(
    start: date,
    end: date,
    db: Session = Depends(get_db),
    principal: Actor = Depends(get_current_actor),
):
    """Rebuild counters for a day range from the log."""
    try:
        result = AggregationService(db).backfill(start, end)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    return BackfillResponse(
        rebuilt_days=result.rebuilt_days,
        stale_days=result.stale_days,
        cancelled=result.cancelled,
    )

"""
Audit log API endpoints.

The API layer is thin: it handles HTTP concerns and delegates
all classification and ordering rules to AuditService.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from audit_engine.api.deps import (
    DispatchAfterCommit,
    get_current_actor,
    http_error,
)
from audit_engine.config import get_settings
from audit_engine.models.base import get_db
from audit_engine.models.enums import ActionType, Outcome, Severity
from audit_engine.schemas.audit import (
    Actor,
    AuditLogEntryResponse,
    AuditLogFilter,
    AuditLogPage,
    RawEvent,
)
from audit_engine.services.audit_service import AuditService

router = APIRouter(prefix="/audit-events", tags=["Audit Log"])


def audit_filter(
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    actor: str | None = None,
    action_type: ActionType | None = None,
    status: Outcome | None = None,
    severity: Severity | None = None,
    resource_type: str | None = None,
    search: str | None = None,
) -> AuditLogFilter:
    return AuditLogFilter(
        start=start,
        end=end,
        actor_id=actor,
        action_type=action_type,
        outcome=status,
        severity=severity,
        resource_type=resource_type,
        search=search,
    )


@router.post("", response_model=AuditLogEntryResponse, status_code=201)
def record_event(
    request: RawEvent,
    db: Session = Depends(get_db),
    principal: Actor = Depends(get_current_actor),
    dispatch: DispatchAfterCommit = Depends(),
):
    """
    Record one action in the audit log.

    Returns 422 if the event cannot be classified; nothing is
    written in that case.
    """
    service = AuditService(db)
    try:
        entry = service.record(request)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)

    response = AuditLogEntryResponse.model_validate(entry)
    dispatch()
    return response


@router.get("", response_model=AuditLogPage)
def list_events(
    filters: AuditLogFilter = Depends(audit_filter),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
):
    """Paginated, filterable log, newest first by default."""
    settings = get_settings()
    size = min(page_size or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
    items, total = AuditService(db).search(
        filters, page=page, page_size=size, descending=order == "desc"
    )
    return AuditLogPage(
        items=[AuditLogEntryResponse.model_validate(e) for e in items],
        total=total,
        page=page,
        page_size=size,
    )


@router.get("/export")
def export_events(
    filters: AuditLogFilter = Depends(audit_filter),
    db: Session = Depends(get_db),
):
    """Download the filtered log as CSV."""
    content = AuditService(db).export_csv(filters)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="audit-log.csv"'},
    )


@router.get("/{sequence_id}", response_model=AuditLogEntryResponse)
def get_event(
    sequence_id: int,
    db: Session = Depends(get_db),
):
    try:
        return AuditService(db).get_entry(sequence_id)
    except ValueError as e:
        raise http_error(e)

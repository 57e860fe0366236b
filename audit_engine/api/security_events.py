"""
Security event API endpoints.

Operator actions on derived incidents. Racing transitions are
reported as 409 Conflict; transitions out of a terminal state as
409 InvalidTransition.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from audit_engine.api.deps import (
    DispatchAfterCommit,
    get_current_actor,
    get_oracle,
    get_origin,
    http_error,
)
from audit_engine.models.base import get_db
from audit_engine.models.enums import SecurityEventStatus, SecurityEventType, Severity
from audit_engine.schemas.audit import Actor, Origin
from audit_engine.schemas.security import ResolveRequest, SecurityEventResponse
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.reputation import ReputationOracle

router = APIRouter(prefix="/security-events", tags=["Security Events"])


@router.get("", response_model=list[SecurityEventResponse])
def list_security_events(
    status: SecurityEventStatus | None = None,
    severity: Severity | None = None,
    type: SecurityEventType | None = None,
    account_id: str | None = None,
    db: Session = Depends(get_db),
    oracle: ReputationOracle = Depends(get_oracle),
):
    service = CorrelatorService(db, oracle=oracle)
    return service.list_events(
        status=status, severity=severity, event_type=type, account_id=account_id
    )


@router.get("/{event_id}", response_model=SecurityEventResponse)
def get_security_event(
    event_id: int,
    db: Session = Depends(get_db),
    oracle: ReputationOracle = Depends(get_oracle),
):
    try:
        return CorrelatorService(db, oracle=oracle).get_event(event_id)
    except ValueError as e:
        raise http_error(e)


@router.post("/{event_id}/acknowledge", response_model=SecurityEventResponse)
def acknowledge(
    event_id: int,
    db: Session = Depends(get_db),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    oracle: ReputationOracle = Depends(get_oracle),
    dispatch: DispatchAfterCommit = Depends(),
):
    service = CorrelatorService(db, oracle=oracle)
    try:
        event = service.acknowledge(event_id, principal.id, principal, origin)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = SecurityEventResponse.model_validate(event)
    dispatch()
    return response


@router.post("/{event_id}/resolve", response_model=SecurityEventResponse)
def resolve(
    event_id: int,
    request: ResolveRequest,
    db: Session = Depends(get_db),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    oracle: ReputationOracle = Depends(get_oracle),
    dispatch: DispatchAfterCommit = Depends(),
):
    service = CorrelatorService(db, oracle=oracle)
    try:
        event = service.resolve(event_id, request.resolver_id, principal, origin)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = SecurityEventResponse.model_validate(event)
    dispatch()
    return response


@router.post("/{event_id}/mark-false-positive", response_model=SecurityEventResponse)
def mark_false_positive(
    event_id: int,
    request: ResolveRequest,
    db: Session = Depends(get_db),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    oracle: ReputationOracle = Depends(get_oracle),
    dispatch: DispatchAfterCommit = Depends(),
):
    """
    Close the event as not a real threat.

    Any lockout or score penalty stays in place; unlock the
    account separately if that is warranted.
    """
    service = CorrelatorService(db, oracle=oracle)
    try:
        event = service.mark_false_positive(
            event_id, request.resolver_id, principal, origin
        )
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = SecurityEventResponse.model_validate(event)
    dispatch()
    return response

"""
Security profile API endpoints.

Every write is recorded in the audit log and followed by a
score recomputation, all in one transaction.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from audit_engine.api.deps import (
    DispatchAfterCommit,
    get_current_actor,
    get_oracle,
    get_origin,
    http_error,
)
from audit_engine.models.base import get_db
from audit_engine.schemas.audit import Actor, Origin
from audit_engine.schemas.security import (
    AllowedIPCreate,
    DeviceRegister,
    SecurityMetricsResponse,
    SecurityProfileResponse,
    TwoFactorUpdate,
)
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.reputation import ReputationOracle
from audit_engine.services.risk_scoring_service import RiskScoringService

router = APIRouter(tags=["Security Profiles"])


def scoring_service(
    db: Session = Depends(get_db),
    oracle: ReputationOracle = Depends(get_oracle),
) -> RiskScoringService:
    correlator = CorrelatorService(db, oracle=oracle)
    return RiskScoringService(db, on_finding=correlator.raise_finding)


def _commit(db: Session, dispatch: DispatchAfterCommit, action):
    try:
        profile = action()
        db.commit()
    except (ValueError, StaleDataError) as e:
        db.rollback()
        raise http_error(e)
    response = SecurityProfileResponse.model_validate(profile)
    dispatch()
    return response


@router.get(
    "/accounts/{account_id}/security-profile",
    response_model=SecurityProfileResponse,
)
def get_security_profile(
    account_id: str,
    service: RiskScoringService = Depends(scoring_service),
):
    try:
        return service.get_profile(account_id)
    except ValueError as e:
        raise http_error(e)


@router.post(
    "/accounts/{account_id}/unlock",
    response_model=SecurityProfileResponse,
)
def unlock_account(
    account_id: str,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    """Clear the lockout flag and failed-login counter."""
    return _commit(db, dispatch, lambda: service.unlock(account_id, principal, origin))


@router.post(
    "/accounts/{account_id}/two-factor",
    response_model=SecurityProfileResponse,
)
def set_two_factor(
    account_id: str,
    request: TwoFactorUpdate,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    return _commit(db, dispatch, lambda: service.set_two_factor(
        account_id, request.enabled, request.method, principal, origin
    ))


@router.post(
    "/accounts/{account_id}/backup-codes",
    response_model=SecurityProfileResponse,
)
def generate_backup_codes(
    account_id: str,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    return _commit(db, dispatch, lambda: service.generate_backup_codes(
        account_id, principal, origin
    ))


@router.post(
    "/accounts/{account_id}/devices",
    response_model=SecurityProfileResponse,
)
def register_device(
    account_id: str,
    request: DeviceRegister,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    return _commit(db, dispatch, lambda: service.register_device(
        account_id, request.device_id, request.device_name, request.trusted,
        principal, origin,
    ))


@router.post(
    "/accounts/{account_id}/allowed-ips",
    response_model=SecurityProfileResponse,
)
def allow_ip(
    account_id: str,
    request: AllowedIPCreate,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    return _commit(db, dispatch, lambda: service.allow_ip(
        account_id, request.ip_address, principal, origin
    ))


@router.delete(
    "/accounts/{account_id}/allowed-ips/{ip_address}",
    response_model=SecurityProfileResponse,
)
def remove_ip(
    account_id: str,
    ip_address: str,
    db: Session = Depends(get_db),
    service: RiskScoringService = Depends(scoring_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    return _commit(db, dispatch, lambda: service.remove_ip(
        account_id, ip_address, principal, origin
    ))


@router.get("/security-metrics", response_model=SecurityMetricsResponse)
def security_metrics(
    db: Session = Depends(get_db),
    oracle: ReputationOracle = Depends(get_oracle),
):
    """Account hygiene and open incident counts."""
    metrics = RiskScoringService(db).metrics()
    metrics.update(CorrelatorService(db, oracle=oracle).counts())
    return metrics

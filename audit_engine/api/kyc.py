"""
KYC review API endpoints.

Decision rules (risk gating, document completeness) live in
KYCService; a violated rule comes back as 409 with the reason.
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
from audit_engine.models.enums import KYCStatus, RiskLevel
from audit_engine.schemas.audit import Actor, Origin
from audit_engine.schemas.kyc import (
    KYCDecisionRequest,
    KYCDocumentCreate,
    KYCDocumentDecisionRequest,
    KYCDocumentResponse,
    KYCStatsResponse,
    KYCSubmissionCreate,
    KYCSubmissionResponse,
)
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.kyc_service import KYCService
from audit_engine.services.reputation import ReputationOracle

router = APIRouter(prefix="/kyc-submissions", tags=["KYC"])


def kyc_service(
    db: Session = Depends(get_db),
    oracle: ReputationOracle = Depends(get_oracle),
) -> KYCService:
    correlator = CorrelatorService(db, oracle=oracle)
    return KYCService(db, on_finding=correlator.raise_finding)


@router.get("", response_model=list[KYCSubmissionResponse])
def list_submissions(
    status: KYCStatus | None = None,
    risk_level: RiskLevel | None = None,
    include_superseded: bool = False,
    service: KYCService = Depends(kyc_service),
):
    return service.list_submissions(
        status=status, risk_level=risk_level, include_superseded=include_superseded
    )


@router.get("/stats", response_model=KYCStatsResponse)
def submission_stats(service: KYCService = Depends(kyc_service)):
    return service.stats()


@router.get("/{submission_id}", response_model=KYCSubmissionResponse)
def get_submission(
    submission_id: int,
    service: KYCService = Depends(kyc_service),
):
    try:
        return service.get_submission(submission_id)
    except ValueError as e:
        raise http_error(e)


@router.post("", response_model=KYCSubmissionResponse, status_code=201)
def create_submission(
    request: KYCSubmissionCreate,
    db: Session = Depends(get_db),
    service: KYCService = Depends(kyc_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    """Open a submission with its first documents."""
    try:
        submission = service.submit(request, principal, origin)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = KYCSubmissionResponse.model_validate(submission)
    dispatch()
    return response


@router.post(
    "/{submission_id}/documents",
    response_model=KYCSubmissionResponse,
    status_code=201,
)
def upload_document(
    submission_id: int,
    request: KYCDocumentCreate,
    db: Session = Depends(get_db),
    service: KYCService = Depends(kyc_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    """Add a document; resubmits a submission that needs more info."""
    try:
        submission = service.upload_document(submission_id, request, principal, origin)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = KYCSubmissionResponse.model_validate(submission)
    dispatch()
    return response


@router.post("/{submission_id}/decision", response_model=KYCSubmissionResponse)
def decide_submission(
    submission_id: int,
    request: KYCDecisionRequest,
    db: Session = Depends(get_db),
    service: KYCService = Depends(kyc_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    try:
        submission = service.decide(
            submission_id,
            request.status,
            principal,
            notes=request.notes,
            override_reason=request.override_reason,
            origin=origin,
        )
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = KYCSubmissionResponse.model_validate(submission)
    dispatch()
    return response


@router.post(
    "/{submission_id}/documents/{document_id}/decision",
    response_model=KYCDocumentResponse,
)
def decide_document(
    submission_id: int,
    document_id: int,
    request: KYCDocumentDecisionRequest,
    db: Session = Depends(get_db),
    service: KYCService = Depends(kyc_service),
    principal: Actor = Depends(get_current_actor),
    origin: Origin = Depends(get_origin),
    dispatch: DispatchAfterCommit = Depends(),
):
    try:
        document = service.decide_document(
            submission_id,
            document_id,
            request.status,
            principal,
            reason=request.reason,
            origin=origin,
        )
        db.commit()
    except ValueError as e:
        db.rollback()
        raise http_error(e)
    response = KYCDocumentResponse.model_validate(document)
    dispatch()
    return response

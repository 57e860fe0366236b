"""
KYC service — identity verification review lifecycle.

Submission states:
    pending -> under_review -> approved | rejected | requires_additional_info
    requires_additional_info -> pending   (only by uploading documents)
    pending -> approved | rejected        (only when risk is low)

Rules enforced here, not by the UI:
- approved requires every document approved
- rejected requires a rejected document or an override reason
- medium/high risk submissions must pass through under_review
- terminal submissions are never edited; a new submission
  supersedes them

Every status change and document decision is recorded in the
audit log. Status changes are a compare-and-swap on the current
status, so two reviewers cannot both decide the same submission.
"""

import logging

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from audit_engine.config import Settings, get_settings
from audit_engine.errors import Conflict, InvalidTransition, NotFound, ValidationError
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.base import utcnow
from audit_engine.models.enums import (
    ActionType,
    DocumentStatus,
    KYCStatus,
    Outcome,
    RiskLevel,
    SecurityEventType,
    Severity,
)
from audit_engine.models.kyc import KYCSubmission, KYCDocument, REVIEW_SHORTCUTS
from audit_engine.schemas.audit import Actor, Origin, RawEvent, Resource
from audit_engine.schemas.kyc import KYCSubmissionCreate, KYCDocumentCreate
from audit_engine.services.audit_service import AuditService
from audit_engine.services.findings import Finding, FindingSink
from audit_engine.services.risk_scoring_service import RiskScoringService, risk_level_for

logger = logging.getLogger(__name__)

# Decisions that record who reviewed and when.
REVIEWED_STATUSES = frozenset({
    KYCStatus.APPROVED,
    KYCStatus.REJECTED,
    KYCStatus.REQUIRES_ADDITIONAL_INFO,
})


class KYCService:

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        on_finding: FindingSink | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.on_finding = on_finding
        self.audit = AuditService(db)
        self.scoring = RiskScoringService(db, self.settings)

    def _risk_level(self, account_id: str) -> RiskLevel:
        return risk_level_for(self.scoring.find_profile(account_id))

    def _record(
        self,
        actor: Actor,
        action: str,
        action_type: ActionType,
        resource: Resource,
        details: str,
        metadata: dict | None = None,
        origin: Origin | None = None,
    ) -> AuditLogEntry:
        return self.audit.record(RawEvent(
            actor=actor,
            action=action,
            action_type=action_type,
            resource=resource,
            outcome=Outcome.SUCCESS,
            origin=origin or Origin(),
            details=details,
            metadata=metadata,
        ))

    # --- Intake ---

    def current_submission(self, account_id: str) -> KYCSubmission | None:
        return self.db.execute(
            select(KYCSubmission).where(
                KYCSubmission.account_id == account_id,
                KYCSubmission.is_current.is_(True),
            )
        ).scalar_one_or_none()

    def submit(
        self,
        request: KYCSubmissionCreate,
        actor: Actor,
        origin: Origin | None = None,
    ) -> KYCSubmission:
        """
        Create a submission for an account.

        If the account's current submission is terminal it is
        superseded. An open one must be completed through
        document uploads instead.
        """
        previous = self.current_submission(request.account_id)
        if previous is not None and not previous.is_terminal:
            raise InvalidTransition(
                f"account {request.account_id} already has an open submission "
                f"({previous.id}, {previous.status.value}); upload documents to it"
            )

        submission = KYCSubmission(
            account_id=request.account_id,
            full_name=request.full_name,
            email=request.email,
            date_of_birth=request.date_of_birth,
            nationality=request.nationality,
            address=request.address,
            phone_number=request.phone_number,
            status=KYCStatus.PENDING,
            risk_level=self._risk_level(request.account_id),
            is_current=True,
        )
        for doc in request.documents:
            submission.documents.append(KYCDocument(
                document_type=doc.document_type,
                filename=doc.filename,
                content_ref=doc.content_ref,
                status=DocumentStatus.PENDING,
            ))

        if previous is not None:
            previous.is_current = False
            self.db.flush()
        self.db.add(submission)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise Conflict(
                f"account {request.account_id} received another submission "
                f"concurrently; re-fetch and retry"
            ) from e
        if previous is not None:
            previous.superseded_by_id = submission.id

        self._record(
            actor,
            "Create KYC Submission",
            ActionType.CREATE,
            Resource(type="kyc_submission", id=str(submission.id)),
            f"KYC submission {submission.id} created for account {submission.account_id}",
            {
                "account_id": submission.account_id,
                "documents": len(submission.documents),
                "supersedes": previous.id if previous is not None else None,
            },
            origin,
        )
        self.db.flush()
        return submission

    def upload_document(
        self,
        submission_id: int,
        request: KYCDocumentCreate,
        actor: Actor,
        origin: Origin | None = None,
    ) -> KYCSubmission:
        """
        Add a document to an open submission.

        Uploading to a submission that requires additional info is
        the resubmission path: it returns the submission to pending.
        """
        submission = self.get_submission(submission_id)
        self._ensure_editable(submission)
        if submission.status == KYCStatus.UNDER_REVIEW:
            raise InvalidTransition(
                f"submission {submission_id} is under review; "
                f"documents cannot be added until the reviewer decides"
            )

        document = KYCDocument(
            document_type=request.document_type,
            filename=request.filename,
            content_ref=request.content_ref,
            status=DocumentStatus.PENDING,
        )
        submission.documents.append(document)
        self.db.flush()

        self._record(
            actor,
            "Upload KYC Document",
            ActionType.CREATE,
            Resource(type="kyc_document", id=str(document.id)),
            f"{request.document_type.value} uploaded to KYC submission {submission_id}",
            {"submission_id": submission_id, "filename": request.filename},
            origin,
        )

        if submission.status == KYCStatus.REQUIRES_ADDITIONAL_INFO:
            self._change_status(
                submission,
                KYCStatus.PENDING,
                actor,
                origin,
                risk_level=self._risk_level(submission.account_id),
            )
        return submission

    # --- Review ---

    def decide(
        self,
        submission_id: int,
        target: KYCStatus,
        reviewer: Actor,
        notes: str | None = None,
        override_reason: str | None = None,
        origin: Origin | None = None,
    ) -> KYCSubmission:
        submission = self.get_submission(submission_id)
        self._ensure_editable(submission)
        current = submission.status

        if target == KYCStatus.PENDING:
            raise InvalidTransition(
                f"submission {submission_id} returns to pending only when "
                f"documents are resubmitted"
            )
        if not submission.can_transition_to(target):
            raise InvalidTransition(
                f"cannot transition submission {submission_id} "
                f"from {current.value} to {target.value}"
            )

        risk = self._risk_level(submission.account_id)
        if current == KYCStatus.PENDING and target in REVIEW_SHORTCUTS and risk != RiskLevel.LOW:
            raise InvalidTransition(
                f"submission {submission_id} is not low-risk "
                f"(risk level {risk.value}); review required"
            )

        if target == KYCStatus.APPROVED:
            outstanding = [
                f"{d.document_type.value} ({d.status.value})"
                for d in submission.documents
                if d.status != DocumentStatus.APPROVED
            ]
            if not submission.documents or outstanding:
                raise InvalidTransition(
                    f"submission {submission_id} cannot be approved; "
                    f"documents not approved: {', '.join(outstanding) or 'none uploaded'}"
                )

        if target == KYCStatus.REJECTED:
            has_rejected = any(
                d.status == DocumentStatus.REJECTED for d in submission.documents
            )
            if not has_rejected and not (override_reason and override_reason.strip()):
                raise InvalidTransition(
                    f"submission {submission_id} cannot be rejected without a "
                    f"rejected document or an override reason"
                )

        now = utcnow()
        values = {"risk_level": risk}
        if notes is not None:
            values["notes"] = notes
        if override_reason:
            values["override_reason"] = override_reason
        if target == KYCStatus.UNDER_REVIEW:
            values["review_started_at"] = now
        if target in REVIEWED_STATUSES:
            values["reviewed_by"] = reviewer.id
            values["reviewed_at"] = now

        entry = self._change_status(submission, target, reviewer, origin, **values)

        logger.info(
            "kyc submission decided",
            extra={
                "submission_id": submission_id,
                "from": current.value,
                "to": target.value,
                "risk_level": risk.value,
                "reviewer": reviewer.id,
            },
        )

        if target == KYCStatus.REJECTED and risk == RiskLevel.HIGH and self.on_finding:
            self.on_finding(Finding(
                event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                severity=Severity.HIGH,
                account_id=submission.account_id,
                description=(
                    f"High-risk KYC submission {submission_id} rejected for "
                    f"account {submission.account_id}"
                ),
                evidence=[entry.id],
            ))
        return submission

    def decide_document(
        self,
        submission_id: int,
        document_id: int,
        status: DocumentStatus,
        reviewer: Actor,
        reason: str | None = None,
        origin: Origin | None = None,
    ) -> KYCDocument:
        submission = self.get_submission(submission_id)
        self._ensure_editable(submission)

        document = next((d for d in submission.documents if d.id == document_id), None)
        if document is None:
            raise NotFound(
                f"Document {document_id} not found in submission {submission_id}"
            )
        if status == DocumentStatus.PENDING:
            raise ValidationError("a document decision must be approved or rejected")
        if status == DocumentStatus.REJECTED and not (reason and reason.strip()):
            raise ValidationError("a rejected document requires a reason")

        previous = document.status
        document.status = status
        document.rejection_reason = reason if status == DocumentStatus.REJECTED else None
        document.reviewed_by = reviewer.id
        document.reviewed_at = utcnow()
        self.db.flush()

        self._record(
            reviewer,
            f"KYC Document {status.value.capitalize()}",
            ActionType.UPDATE,
            Resource(type="kyc_document", id=str(document.id)),
            f"{document.document_type.value} in submission {submission_id} "
            f"marked {status.value}",
            {
                "submission_id": submission_id,
                "from": previous.value,
                "to": status.value,
                "reason": reason,
            },
            origin,
        )
        return document

    def _ensure_editable(self, submission: KYCSubmission) -> None:
        if not submission.is_current:
            raise InvalidTransition(
                f"submission {submission.id} was superseded by "
                f"submission {submission.superseded_by_id}"
            )
        if submission.is_terminal:
            raise InvalidTransition(
                f"submission {submission.id} is {submission.status.value}; "
                f"start a new submission instead"
            )

    def _change_status(
        self,
        submission: KYCSubmission,
        target: KYCStatus,
        actor: Actor,
        origin: Origin | None,
        **values,
    ) -> AuditLogEntry:
        current = submission.status
        self.db.flush()
        result = self.db.execute(
            update(KYCSubmission)
            .where(KYCSubmission.id == submission.id, KYCSubmission.status == current)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(
                f"submission {submission.id} was changed concurrently; "
                f"re-fetch and retry"
            )
        self.db.refresh(submission)

        return self._record(
            actor,
            f"KYC Status Changed to {target.value}",
            ActionType.UPDATE,
            Resource(type="kyc_submission", id=str(submission.id)),
            f"KYC submission {submission.id} moved from {current.value} to {target.value}",
            {
                "account_id": submission.account_id,
                "from": current.value,
                "to": target.value,
                "risk_level": submission.risk_level.value,
            },
            origin,
        )

    # --- Queries ---

    def get_submission(self, submission_id: int) -> KYCSubmission:
        submission = self.db.get(KYCSubmission, submission_id)
        if not submission:
            raise NotFound(f"KYC submission {submission_id} not found")
        return submission

    def list_submissions(
        self,
        status: KYCStatus | None = None,
        risk_level: RiskLevel | None = None,
        include_superseded: bool = False,
    ) -> list[KYCSubmission]:
        """Matching submissions, newest first."""
        query = select(KYCSubmission)
        if status is not None:
            query = query.where(KYCSubmission.status == status)
        if risk_level is not None:
            query = query.where(KYCSubmission.risk_level == risk_level)
        if not include_superseded:
            query = query.where(KYCSubmission.is_current.is_(True))
        submissions = self.db.execute(
            query.order_by(KYCSubmission.submitted_at.desc(), KYCSubmission.id.desc())
        ).scalars().all()
        return list(submissions)

    def stats(self) -> dict:
        rows = self.db.execute(
            select(KYCSubmission.status, func.count(KYCSubmission.id))
            .where(KYCSubmission.is_current.is_(True))
            .group_by(KYCSubmission.status)
        ).all()
        counts = {status: count for status, count in rows}
        return {
            "total_submissions": sum(counts.values()),
            "pending_review": counts.get(KYCStatus.PENDING, 0),
            "under_review": counts.get(KYCStatus.UNDER_REVIEW, 0),
            "approved": counts.get(KYCStatus.APPROVED, 0),
            "rejected": counts.get(KYCStatus.REJECTED, 0),
            "requires_additional_info": counts.get(KYCStatus.REQUIRES_ADDITIONAL_INFO, 0),
        }

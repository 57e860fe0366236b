"""
Pydantic schemas for the KYC review workflow.
"""

from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator

from audit_engine.models.enums import (
    KYCStatus,
    DocumentStatus,
    DocumentType,
    RiskLevel,
)


# --- Request Schemas ---

class KYCDocumentCreate(BaseModel):
    document_type: DocumentType
    filename: str = Field(min_length=1, max_length=255)
    content_ref: str | None = Field(default=None, max_length=500)


class KYCSubmissionCreate(BaseModel):
    """First upload for an account: applicant data plus documents."""
    account_id: str = Field(min_length=1, max_length=100)
    full_name: str = Field(min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    date_of_birth: date | None = None
    nationality: str | None = Field(default=None, max_length=100)
    address: str | None = Field(default=None, max_length=500)
    phone_number: str | None = Field(default=None, max_length=50)
    documents: list[KYCDocumentCreate] = Field(min_length=1)


class KYCDecisionRequest(BaseModel):
    status: KYCStatus
    notes: str | None = Field(default=None, max_length=5000)
    override_reason: str | None = Field(default=None, max_length=1000)


class KYCDocumentDecisionRequest(BaseModel):
    status: DocumentStatus
    reason: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def rejection_needs_reason(self):
        if self.status == DocumentStatus.REJECTED and not (self.reason and self.reason.strip()):
            raise ValueError("a rejected document requires a reason")
        return self


# --- Response Schemas ---

class KYCDocumentResponse(BaseModel):
    id: int
    document_type: DocumentType
    filename: str
    content_ref: str | None
    uploaded_at: datetime
    status: DocumentStatus
    rejection_reason: str | None
    reviewed_by: str | None
    reviewed_at: datetime | None

    model_config = {"from_attributes": True}


class KYCSubmissionResponse(BaseModel):
    id: int
    account_id: str
    full_name: str
    email: str | None
    date_of_birth: date | None
    nationality: str | None
    address: str | None
    phone_number: str | None
    submitted_at: datetime
    status: KYCStatus
    risk_level: RiskLevel
    documents: list[KYCDocumentResponse]
    reviewed_by: str | None
    reviewed_at: datetime | None
    review_started_at: datetime | None
    notes: str | None
    override_reason: str | None
    is_current: bool
    superseded_by_id: int | None

    model_config = {"from_attributes": True}


class KYCStatsResponse(BaseModel):
    total_submissions: int
    pending_review: int
    under_review: int
    approved: int
    rejected: int
    requires_additional_info: int

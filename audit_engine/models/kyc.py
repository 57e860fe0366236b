"""
KYC submission and document models.

An account has at most one current submission. Starting over
after a terminal decision creates a new submission and marks
the old one superseded; terminal submissions are never edited.
"""

from datetime import date, datetime

from sqlalchemy import (
    String, DateTime, Date, Text, Boolean, ForeignKey, Index,
    Enum as SAEnum, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from audit_engine.models.base import Base, utcnow
from audit_engine.models.enums import (
    KYCStatus,
    DocumentStatus,
    DocumentType,
    RiskLevel,
)


# Valid state transitions. The low-risk shortcut
# (PENDING -> APPROVED/REJECTED) is gated separately by
# KYCService, which checks the computed risk level.
VALID_TRANSITIONS: dict[KYCStatus, set[KYCStatus]] = {
    KYCStatus.PENDING: {
        KYCStatus.UNDER_REVIEW,
        KYCStatus.APPROVED,
        KYCStatus.REJECTED,
    },
    KYCStatus.UNDER_REVIEW: {
        KYCStatus.APPROVED,
        KYCStatus.REJECTED,
        KYCStatus.REQUIRES_ADDITIONAL_INFO,
    },
    KYCStatus.REQUIRES_ADDITIONAL_INFO: {KYCStatus.PENDING},
    KYCStatus.APPROVED: set(),  # Terminal
    KYCStatus.REJECTED: set(),  # Terminal
}

# Transitions out of PENDING that skip review.
REVIEW_SHORTCUTS = frozenset({KYCStatus.APPROVED, KYCStatus.REJECTED})


class KYCSubmission(Base):
    __tablename__ = "kyc_submissions"
    __table_args__ = (
        # At most one current submission per account.
        Index(
            "uq_kyc_current_submission",
            "account_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Applicant personal data
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    nationality: Mapped[str | None] = mapped_column(String(100), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    status: Mapped[KYCStatus] = mapped_column(
        SAEnum(KYCStatus, name="kyc_status_enum", create_constraint=True),
        nullable=False,
        default=KYCStatus.PENDING,
        index=True,
    )
    risk_level: Mapped[RiskLevel] = mapped_column(
        SAEnum(RiskLevel, name="kyc_risk_level_enum", create_constraint=True),
        nullable=False,
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_started_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("kyc_submissions.id"), nullable=True
    )

    documents: Mapped[list["KYCDocument"]] = relationship(
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="KYCDocument.id",
    )

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.status]

    def can_transition_to(self, new_status: KYCStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def __repr__(self) -> str:
        return (
            f"<KYCSubmission {self.id} account={self.account_id} "
            f"({self.status.value}, {self.risk_level.value})>"
        )


class KYCDocument(Base):
    __tablename__ = "kyc_documents"

    id: Mapped[int] = mapped_column(primary_key=True)
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("kyc_submissions.id"), nullable=False, index=True
    )
    document_type: Mapped[DocumentType] = mapped_column(
        SAEnum(DocumentType, name="kyc_document_type_enum", create_constraint=True),
        nullable=False,
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    status: Mapped[DocumentStatus] = mapped_column(
        SAEnum(DocumentStatus, name="kyc_document_status_enum", create_constraint=True),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    submission: Mapped["KYCSubmission"] = relationship(back_populates="documents")

"""
Database models package.

All models must be imported here so that Alembic can discover
them through Base.metadata when generating migrations.
"""

from audit_engine.models.base import Base
from audit_engine.models.enums import (
    ActionType,
    Outcome,
    Severity,
    SecurityEventType,
    SecurityEventStatus,
    TwoFactorMethod,
    ScoreTier,
    KYCStatus,
    DocumentStatus,
    DocumentType,
    RiskLevel,
)
from audit_engine.models.audit_log import AuditLogEntry, AuditLogSequence
from audit_engine.models.security_profile import (
    SecurityAccountProfile,
    TrustedDevice,
    AllowedIP,
)
from audit_engine.models.security_event import SecurityEvent, SecurityEventEvidence
from audit_engine.models.kyc import KYCSubmission, KYCDocument
from audit_engine.models.aggregate import (
    DailySummary,
    DailyActionCount,
    DailyActorCount,
)
from audit_engine.models.consumer_cursor import ConsumerCursor

__all__ = [
    "Base",
    "ActionType",
    "Outcome",
    "Severity",
    "SecurityEventType",
    "SecurityEventStatus",
    "TwoFactorMethod",
    "ScoreTier",
    "KYCStatus",
    "DocumentStatus",
    "DocumentType",
    "RiskLevel",
    "AuditLogEntry",
    "AuditLogSequence",
    "SecurityAccountProfile",
    "TrustedDevice",
    "AllowedIP",
    "SecurityEvent",
    "SecurityEventEvidence",
    "KYCSubmission",
    "KYCDocument",
    "DailySummary",
    "DailyActionCount",
    "DailyActorCount",
    "ConsumerCursor",
]

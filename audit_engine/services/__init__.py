"""Business logic services."""

from audit_engine.services.audit_service import AuditService
from audit_engine.services.risk_scoring_service import RiskScoringService
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.kyc_service import KYCService
from audit_engine.services.aggregation_service import AggregationService
from audit_engine.services.dispatcher import Dispatcher

__all__ = [
    "AuditService",
    "RiskScoringService",
    "CorrelatorService",
    "KYCService",
    "AggregationService",
    "Dispatcher",
]

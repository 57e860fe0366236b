"""Candidate findings passed from producers to the correlator."""

from dataclasses import dataclass, field
from typing import Callable

from audit_engine.models.enums import SecurityEventType, Severity


@dataclass
class Finding:
    """
    A signal that may warrant a security event.

    Producers (risk scoring, KYC review) only report findings;
    the correlator alone decides whether to open an event or
    attach the evidence to one that is already open.
    """
    event_type: SecurityEventType
    severity: Severity
    account_id: str | None
    description: str
    evidence: list[int] = field(default_factory=list)
    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None


FindingSink = Callable[[Finding], object]

"""
Pydantic schemas for security profiles and security events.
"""

from datetime import datetime

from pydantic import BaseModel, Field, computed_field

from audit_engine.models.enums import (
    ScoreTier,
    SecurityEventStatus,
    SecurityEventType,
    Severity,
    TwoFactorMethod,
)
from audit_engine.services.risk_scoring_service import score_tier


# --- Profile Schemas ---

class TrustedDeviceResponse(BaseModel):
    device_id: str
    device_name: str
    trusted: bool
    last_used: datetime

    model_config = {"from_attributes": True}


class SecurityProfileResponse(BaseModel):
    account_id: str
    two_factor_enabled: bool
    two_factor_method: TwoFactorMethod | None
    backup_codes_generated: bool
    failed_login_count: int
    locked: bool
    locked_at: datetime | None
    score: int
    devices: list[TrustedDeviceResponse]
    ip_allow_list: list[str]
    last_login_at: datetime | None
    scored_at: datetime | None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def tier(self) -> ScoreTier:
        return score_tier(self.score)


class TwoFactorUpdate(BaseModel):
    enabled: bool
    method: TwoFactorMethod | None = None


class DeviceRegister(BaseModel):
    device_id: str = Field(min_length=1, max_length=100)
    device_name: str = Field(min_length=1, max_length=200)
    trusted: bool = False


class AllowedIPCreate(BaseModel):
    ip_address: str = Field(min_length=2, max_length=64)


class SecurityMetricsResponse(BaseModel):
    total_accounts: int
    two_factor_enabled: int
    locked_accounts: int
    average_score: float
    active_events: int
    acknowledged_events: int
    active_threats: int


# --- Security Event Schemas ---

class SecurityEventResponse(BaseModel):
    id: int
    event_type: SecurityEventType
    severity: Severity
    account_id: str | None
    description: str
    ip_address: str | None
    user_agent: str | None
    location: str | None
    status: SecurityEventStatus
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime
    evidence_ids: list[int]

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    resolver_id: str = Field(min_length=1, max_length=100)

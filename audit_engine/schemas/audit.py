"""
Pydantic schemas for audit log ingestion and queries.

These define the API contract. They are separate from the
database models because the API shape and the storage shape
differ: the API nests actor/resource/origin, storage flattens.
"""

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator

from audit_engine.models.base import as_naive_utc, utcnow
from audit_engine.models.enums import ActionType, Outcome, Severity

# How far ahead of the engine clock a producer timestamp may be.
MAX_CLOCK_SKEW = timedelta(minutes=5)


# --- Request Schemas ---

class Actor(BaseModel):
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    role: str = Field(min_length=1, max_length=50)


class Resource(BaseModel):
    type: str = Field(min_length=1, max_length=100)
    id: str | None = Field(default=None, max_length=100)


class Origin(BaseModel):
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None, max_length=500)
    session_id: str | None = Field(default=None, max_length=100)
    location: str | None = Field(default=None, max_length=200)


class RawEvent(BaseModel):
    """
    One action as reported by a producer.

    action_type may be omitted when the action label names it
    (e.g. "User Login"). severity is optional and can only raise
    the classified severity, never lower it.
    """
    actor: Actor
    action: str = Field(min_length=1, max_length=200)
    action_type: ActionType | None = None
    resource: Resource
    outcome: Outcome
    origin: Origin = Field(default_factory=Origin)
    details: str = Field(default="", max_length=5000)
    metadata: dict[str, Any] | None = None
    severity: Severity | None = None
    occurred_at: datetime | None = None

    @field_validator("action")
    @classmethod
    def action_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("action must not be blank")
        return v.strip()

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_in_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return v
        v = as_naive_utc(v)
        if v > utcnow() + MAX_CLOCK_SKEW:
            raise ValueError("occurred_at must not be in the future")
        return v


class AuditLogFilter(BaseModel):
    """Filters for searching the log. All are optional and AND-ed."""
    start: datetime | None = None
    end: datetime | None = None
    actor_id: str | None = None
    action_type: ActionType | None = None
    outcome: Outcome | None = None
    severity: Severity | None = None
    resource_type: str | None = None
    search: str | None = None

    @field_validator("start", "end")
    @classmethod
    def bounds_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_naive_utc(v) if v is not None else v


# --- Response Schemas ---

class AuditLogEntryResponse(BaseModel):
    id: int
    timestamp: datetime
    actor_id: str
    actor_name: str
    actor_role: str
    action: str
    action_type: ActionType
    resource_type: str
    resource_id: str | None
    outcome: Outcome
    severity: Severity
    ip_address: str | None
    user_agent: str | None
    session_id: str | None
    location: str | None
    details: str
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="metadata_"
    )
    fingerprint: str

    model_config = {"from_attributes": True, "populate_by_name": True}


class AuditLogPage(BaseModel):
    items: list[AuditLogEntryResponse]
    total: int
    page: int
    page_size: int

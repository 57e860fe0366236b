"""
Pydantic schemas for audit summaries.
"""

from datetime import date

from pydantic import BaseModel


class CountItem(BaseModel):
    key: str
    count: int


class ActorCount(BaseModel):
    actor_id: str
    actor_name: str
    count: int


class DayStatus(BaseModel):
    day: date
    total: int
    closed: bool
    stale: bool


class AuditSummaryResponse(BaseModel):
    start: date
    end: date
    group_by: str
    total: int
    success: int
    failed: int
    warning: int
    unique_actors: int
    severity: dict[str, int]
    top_actions: list[CountItem]
    top_actors: list[ActorCount]
    groups: list[CountItem]
    days: list[DayStatus]
    complete: bool
    stale: bool


class BackfillResponse(BaseModel):
    rebuilt_days: list[date]
    stale_days: list[date]
    cancelled: bool

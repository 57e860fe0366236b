"""
Audit log model.

Records every privileged administrative or authentication
action. Entries are append-only: the sequence id is assigned
once under the log's sequence lock and never reused, and the
ORM refuses to update or delete a persisted entry.
"""

from datetime import datetime

from sqlalchemy import (
    DDL, String, DateTime, Text, Integer, JSON,
    Enum as SAEnum, event,
)
from sqlalchemy.orm import Mapped, mapped_column

from audit_engine.models.base import Base, utcnow
from audit_engine.models.enums import ActionType, Outcome, Severity


class AuditLogEntry(Base):
    """
    Immutable record of one action.

    `id` is the log sequence id. It is not generated by the
    database: AuditService takes it from AuditLogSequence in the
    same transaction as the insert, which keeps ids gapless.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    actor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    actor_name: Mapped[str] = mapped_column(String(200), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)

    action: Mapped[str] = mapped_column(String(200), nullable=False)
    action_type: Mapped[ActionType] = mapped_column(
        SAEnum(ActionType, name="action_type_enum", create_constraint=True),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    outcome: Mapped[Outcome] = mapped_column(
        SAEnum(Outcome, name="outcome_enum", create_constraint=True),
        nullable=False,
    )
    severity: Mapped[Severity] = mapped_column(
        SAEnum(Severity, name="severity_enum", create_constraint=True),
        nullable=False,
    )

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def account_ref(self) -> str | None:
        """The account this entry is about, if any."""
        if self.resource_type == "account" and self.resource_id:
            return self.resource_id
        if self.action_type in (ActionType.LOGIN, ActionType.LOGOUT):
            return self.actor_id
        return None

    def __repr__(self) -> str:
        return (
            f"<AuditLogEntry #{self.id} {self.action_type.value} "
            f"{self.action!r} ({self.outcome.value}/{self.severity.value})>"
        )


class AuditLogSequence(Base):
    """
    Single-row counter holding the next sequence id.

    Appends lock this row, so there is exactly one writer per log
    at a time. A rolled-back append rolls the counter back too.
    """

    __tablename__ = "audit_log_sequence"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    next_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} is immutable")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ValueError(f"Audit log entry {target.id} cannot be deleted")


# Seed the counter when the table is created so the first append
# takes the normal increment path.
event.listen(
    AuditLogSequence.__table__,
    "after_create",
    DDL("INSERT INTO audit_log_sequence (name, next_value) VALUES ('audit_log', 1)"),
)

"""
Security event model.

A derived incident opened by the correlator. It never gets
deleted, only terminalized. Status changes go through a
compare-and-swap on `status` so that two operators racing
on the same event cannot both win.
"""

from datetime import datetime

from sqlalchemy import (
    String, DateTime, Text, Integer, ForeignKey, Index,
    Enum as SAEnum, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from audit_engine.models.base import Base, utcnow
from audit_engine.models.enums import (
    SecurityEventType,
    SecurityEventStatus,
    Severity,
)


# Valid state transitions, the only source of truth for the state machine
VALID_TRANSITIONS: dict[SecurityEventStatus, set[SecurityEventStatus]] = {
    SecurityEventStatus.ACTIVE: {
        SecurityEventStatus.ACKNOWLEDGED,
        SecurityEventStatus.RESOLVED,
        SecurityEventStatus.FALSE_POSITIVE,
    },
    SecurityEventStatus.ACKNOWLEDGED: {
        SecurityEventStatus.RESOLVED,
        SecurityEventStatus.FALSE_POSITIVE,
    },
    SecurityEventStatus.RESOLVED: set(),  # Terminal
    SecurityEventStatus.FALSE_POSITIVE: set(),  # Terminal
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (
        # One open event per account and type. The enum column
        # stores member names.
        Index(
            "uq_security_event_open",
            "account_id",
            "event_type",
            unique=True,
            postgresql_where=text("status IN ('ACTIVE', 'ACKNOWLEDGED')"),
            sqlite_where=text("status IN ('ACTIVE', 'ACKNOWLEDGED')"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_type: Mapped[SecurityEventType] = mapped_column(
        SAEnum(SecurityEventType, name="security_event_type_enum", create_constraint=True),
        nullable=False,
        index=True,
    )
    severity: Mapped[Severity] = mapped_column(
        SAEnum(Severity, name="security_event_severity_enum", create_constraint=True),
        nullable=False,
    )
    account_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[SecurityEventStatus] = mapped_column(
        SAEnum(SecurityEventStatus, name="security_event_status_enum", create_constraint=True),
        nullable=False,
        default=SecurityEventStatus.ACTIVE,
        index=True,
    )
    acknowledged_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    evidence: Mapped[list["SecurityEventEvidence"]] = relationship(
        back_populates="security_event",
        cascade="all, delete-orphan",
        order_by="SecurityEventEvidence.sequence_id",
    )

    @property
    def evidence_ids(self) -> list[int]:
        return [e.sequence_id for e in self.evidence]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: SecurityEventStatus) -> bool:
        """Check if a state transition is valid."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def __repr__(self) -> str:
        return (
            f"<SecurityEvent {self.id} {self.event_type.value} "
            f"({self.status.value})>"
        )


class SecurityEventEvidence(Base):
    """
    Link between an event and one contributing audit entry.

    The unique constraint makes evidence appends idempotent
    under consumer replay.
    """

    __tablename__ = "security_event_evidence"
    __table_args__ = (
        UniqueConstraint("security_event_id", "sequence_id", name="uq_evidence_entry"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    security_event_id: Mapped[int] = mapped_column(
        ForeignKey("security_events.id"), nullable=False, index=True
    )
    sequence_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("audit_log.id"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    security_event: Mapped["SecurityEvent"] = relationship(back_populates="evidence")

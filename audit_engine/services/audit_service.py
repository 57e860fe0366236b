"""
Audit service — the single entry point to the audit log.

This service enforces the fundamental rules of the log:
1. Every entry is classified before it is written
2. Entries are immutable (append-only)
3. Sequence ids are strictly increasing with no gaps
4. A rejected event writes nothing

No other component inserts into the log directly. Producers
(API callers, the KYC workflow, the correlator) call record().
The caller controls the commit.
"""

import csv
import hashlib
import io
import json
import logging
from typing import Any, Iterable

from sqlalchemy import select, update, insert, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.errors import NotFound, StorageError
from audit_engine.models.audit_log import AuditLogEntry, AuditLogSequence
from audit_engine.models.base import utcnow
from audit_engine.schemas.audit import RawEvent, AuditLogFilter
from audit_engine.services.classifier import classify

logger = logging.getLogger(__name__)

SEQUENCE_NAME = "audit_log"

# Metadata keys containing any of these are dropped before append.
SENSITIVE_KEYS = ("password", "token", "secret")

EXPORT_COLUMNS = [
    "id", "timestamp", "actor_id", "actor_name", "actor_role",
    "action", "action_type", "resource_type", "resource_id",
    "outcome", "severity", "ip_address", "user_agent", "session_id",
    "location", "details",
]


def redact(value: Any) -> Any:
    """Strip sensitive keys from nested metadata."""
    if isinstance(value, dict):
        return {
            k: redact(v) for k, v in value.items()
            if not any(s in str(k).lower() for s in SENSITIVE_KEYS)
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def fingerprint(
    actor_id: str,
    action_type: str,
    action: str,
    ip_address: str | None,
    metadata: dict | None,
) -> str:
    payload = "-".join([
        actor_id,
        action_type,
        action,
        ip_address or "",
        json.dumps(metadata or {}, sort_keys=True, default=str),
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditService:
    """
    All audit log reads and writes pass through this service.

    The service takes a database session as a constructor
    argument. The caller controls the transaction boundary.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(self, event: RawEvent) -> AuditLogEntry:
        """
        Classify a raw event and append it to the log.

        Raises ValidationError if the event cannot be classified.
        Classification happens before anything is written, so a
        rejected event leaves no trace.
        """
        action_type, severity = classify(
            event.action, event.action_type, event.outcome, event.severity
        )
        metadata = redact(event.metadata) if event.metadata else None

        return self.append(
            timestamp=event.occurred_at or utcnow(),
            actor_id=event.actor.id,
            actor_name=event.actor.name,
            actor_role=event.actor.role,
            action=event.action,
            action_type=action_type,
            resource_type=event.resource.type,
            resource_id=event.resource.id,
            outcome=event.outcome,
            severity=severity,
            ip_address=event.origin.ip_address,
            user_agent=event.origin.user_agent,
            session_id=event.origin.session_id,
            location=event.origin.location,
            details=event.details,
            metadata_=metadata,
            fingerprint=fingerprint(
                event.actor.id,
                action_type.value,
                event.action,
                event.origin.ip_address,
                metadata,
            ),
        )

    def append(self, **fields) -> AuditLogEntry:
        """
        Append one already-classified entry.

        The next sequence id is taken with an atomic increment on
        the sequence row. That row stays locked until the caller
        commits, so appends are serialized, and a rollback returns
        the id along with the entry.
        """
        try:
            sequence_id = self._next_sequence_id()
            entry = AuditLogEntry(id=sequence_id, **fields)
            self.db.add(entry)
            self.db.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to append audit entry: {e}") from e

        logger.debug(
            "audit entry appended",
            extra={
                "sequence_id": entry.id,
                "action_type": entry.action_type.value,
                "severity": entry.severity.value,
            },
        )
        return entry

    def _next_sequence_id(self) -> int:
        claimed = self.db.execute(
            update(AuditLogSequence)
            .where(AuditLogSequence.name == SEQUENCE_NAME)
            .values(next_value=AuditLogSequence.next_value + 1)
            .returning(AuditLogSequence.next_value)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if claimed is None:
            # Counter row missing (fresh schema without the seed row):
            # seed it past the current max. A concurrent seeder makes
            # this insert fail, which surfaces as StorageError.
            current_max = self.db.execute(
                select(func.coalesce(func.max(AuditLogEntry.id), 0))
            ).scalar()
            self.db.execute(
                insert(AuditLogSequence).values(
                    name=SEQUENCE_NAME, next_value=current_max + 2
                )
            )
            return current_max + 1

        return claimed - 1

    def get_entry(self, sequence_id: int) -> AuditLogEntry:
        entry = self.db.get(AuditLogEntry, sequence_id)
        if not entry:
            raise NotFound(f"Audit entry {sequence_id} not found")
        return entry

    def read_from(self, cursor: int, limit: int = 500) -> list[AuditLogEntry]:
        """Return committed entries after `cursor`, oldest first."""
        try:
            entries = self.db.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.id > cursor)
                .order_by(AuditLogEntry.id.asc())
                .limit(limit)
            ).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to read audit log: {e}") from e
        return list(entries)

    def _filtered(self, filters: AuditLogFilter):
        query = select(AuditLogEntry)
        if filters.start is not None:
            query = query.where(AuditLogEntry.timestamp >= filters.start)
        if filters.end is not None:
            query = query.where(AuditLogEntry.timestamp < filters.end)
        if filters.actor_id:
            query = query.where(AuditLogEntry.actor_id == filters.actor_id)
        if filters.action_type is not None:
            query = query.where(AuditLogEntry.action_type == filters.action_type)
        if filters.outcome is not None:
            query = query.where(AuditLogEntry.outcome == filters.outcome)
        if filters.severity is not None:
            query = query.where(AuditLogEntry.severity == filters.severity)
        if filters.resource_type:
            query = query.where(AuditLogEntry.resource_type == filters.resource_type)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(or_(
                AuditLogEntry.action.ilike(pattern),
                AuditLogEntry.details.ilike(pattern),
                AuditLogEntry.actor_name.ilike(pattern),
            ))
        return query

    def search(
        self,
        filters: AuditLogFilter,
        page: int = 1,
        page_size: int = 20,
        descending: bool = True,
    ) -> tuple[list[AuditLogEntry], int]:
        """Return one page of matching entries and the total match count."""
        query = self._filtered(filters)
        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar()

        order = AuditLogEntry.id.desc() if descending else AuditLogEntry.id.asc()
        entries = self.db.execute(
            query.order_by(order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()
        return list(entries), total

    def iter_filtered(self, filters: AuditLogFilter) -> Iterable[AuditLogEntry]:
        return self.db.execute(
            self._filtered(filters).order_by(AuditLogEntry.id.desc())
        ).scalars()

    def export_csv(self, filters: AuditLogFilter) -> str:
        """Render matching entries as CSV, newest first."""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for entry in self.iter_filtered(filters):
            row = []
            for column in EXPORT_COLUMNS:
                value = getattr(entry, column)
                if hasattr(value, "value"):
                    value = value.value
                elif hasattr(value, "isoformat"):
                    value = value.isoformat()
                row.append("" if value is None else value)
            writer.writerow(row)
        return buffer.getvalue()

"""
Dispatcher — feeds committed audit entries to the consumers.

Risk scoring, the correlator and aggregation each read the log
through their own cursor. Every entry is handled and the cursor
advanced in one transaction, so a crash replays at most the
entry in flight, and every consumer is idempotent under replay.

A failing entry is retried with exponential backoff. If it keeps
failing, the consumer stops at that entry and picks it up again
on the next pump; the audit log itself is never touched.
"""

import logging
from typing import Callable

from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    RetryError,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from audit_engine.config import Settings, get_settings
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.consumer_cursor import ConsumerCursor
from audit_engine.services.aggregation_service import (
    AggregationService,
    CURSOR_NAME as AGGREGATION,
)
from audit_engine.services.audit_service import AuditService
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.reputation import ReputationOracle, default_oracle
from audit_engine.services.risk_scoring_service import RiskScoringService

logger = logging.getLogger(__name__)

RISK_SCORING = "risk_scoring"
CORRELATOR = "correlator"

CONSUMERS = (RISK_SCORING, CORRELATOR, AGGREGATION)

RETRY_ATTEMPTS = 3


class Dispatcher:

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        oracle: ReputationOracle | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.oracle = oracle if oracle is not None else default_oracle()
        self.handlers: dict[str, Callable[[AuditLogEntry], object]] = {
            RISK_SCORING: self._score,
            CORRELATOR: self._correlate,
            AGGREGATION: self._aggregate,
        }

    def correlator(self) -> CorrelatorService:
        return CorrelatorService(self.db, self.settings, self.oracle)

    def _score(self, entry: AuditLogEntry):
        scoring = RiskScoringService(
            self.db, self.settings, on_finding=self.correlator().raise_finding
        )
        return scoring.observe(entry)

    def _correlate(self, entry: AuditLogEntry):
        return self.correlator().observe(entry)

    def _aggregate(self, entry: AuditLogEntry):
        return AggregationService(self.db, self.settings).observe(entry)

    def _cursor(self, name: str) -> ConsumerCursor:
        cursor = self.db.get(ConsumerCursor, name)
        if cursor is None:
            cursor = ConsumerCursor(name=name, last_sequence_id=0)
            self.db.add(cursor)
            self.db.flush()
        return cursor

    def pump(self, names: tuple[str, ...] | None = None) -> dict[str, int]:
        """Drain every named consumer up to the log head. Returns entries handled."""
        processed = {}
        for name in names or CONSUMERS:
            processed[name] = self.drain(name)
        return processed

    def drain(self, name: str) -> int:
        handler = self.handlers[name]
        handled = 0
        while True:
            cursor_position = self._cursor(name).last_sequence_id
            self.db.commit()
            entries = AuditService(self.db).read_from(
                cursor_position, self.settings.CONSUMER_BATCH_SIZE
            )
            if not entries:
                return handled
            for entry in entries:
                try:
                    self._handle_with_retry(name, handler, entry)
                except RetryError:
                    logger.exception(
                        "consumer halted on entry after retries",
                        extra={"consumer": name, "sequence_id": entry.id},
                    )
                    return handled
                handled += 1

    def _handle_with_retry(self, name: str, handler, entry: AuditLogEntry) -> None:
        entry_id = entry.id
        retrying = Retrying(
            stop=stop_after_attempt(RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=0.1, max=2),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        for attempt in retrying:
            with attempt:
                try:
                    current = self.db.get(AuditLogEntry, entry_id)
                    handler(current)
                    cursor = self._cursor(name)
                    if entry_id > cursor.last_sequence_id:
                        cursor.last_sequence_id = entry_id
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise

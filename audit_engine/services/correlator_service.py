"""
Correlator service — derives and manages security events.

Events are opened when:
- N consecutive failed logins by one actor land inside the window
- a critical-severity entry is ingested
- a login or security action comes from a denylisted address
- a producer (risk scoring, KYC review) raises a finding

While an event is open (active or acknowledged), further triggers
for the same account and event type attach their entries to it
instead of opening another. Evidence links are unique per entry,
so replaying an entry never duplicates evidence.

Operator transitions are a compare-and-swap on the current
status. Of two operators racing on one event, the loser gets
Conflict; nothing is silently overwritten.
"""

import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from audit_engine.config import Settings, get_settings
from audit_engine.errors import (
    Conflict,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.base import utcnow
from audit_engine.models.enums import (
    ActionType,
    Outcome,
    SecurityEventStatus,
    SecurityEventType,
    Severity,
)
from audit_engine.models.security_event import (
    SecurityEvent,
    SecurityEventEvidence,
)
from audit_engine.schemas.audit import Actor, Origin, RawEvent, Resource
from audit_engine.services.audit_service import AuditService
from audit_engine.services.classifier import max_severity
from audit_engine.services.findings import Finding
from audit_engine.services.reputation import ReputationOracle, default_oracle, lookup

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SecurityEventStatus.ACTIVE, SecurityEventStatus.ACKNOWLEDGED)

# Identity used for entries the correlator itself writes.
SYSTEM_ACTOR = Actor(id="system:correlator", name="Security Correlator", role="system")

REPUTATION_CHECKED = (ActionType.LOGIN, ActionType.SECURITY)

TRANSITION_ACTIONS = {
    SecurityEventStatus.ACKNOWLEDGED: "Acknowledge Security Event",
    SecurityEventStatus.RESOLVED: "Resolve Security Event",
    SecurityEventStatus.FALSE_POSITIVE: "Mark Security Event False Positive",
}


class CorrelatorService:

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        oracle: ReputationOracle | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.oracle = oracle if oracle is not None else default_oracle()
        self.audit = AuditService(db)

    # --- Detection ---

    def observe(self, entry: AuditLogEntry) -> list[SecurityEvent]:
        """Run every detector over one entry. Returns the events touched."""
        touched = []

        if entry.action_type == ActionType.LOGIN and entry.outcome == Outcome.FAILED:
            event = self._check_failed_logins(entry)
            if event is not None:
                touched.append(event)

        if entry.severity == Severity.CRITICAL:
            touched.append(self._open_or_append(
                event_type=_critical_event_type(entry),
                severity=Severity.CRITICAL,
                account_id=entry.account_ref or entry.actor_id,
                description=f"Critical action '{entry.action}' by {entry.actor_name}",
                evidence=[entry.id],
                entry=entry,
            ))

        if entry.ip_address and entry.action_type in REPUTATION_CHECKED:
            event = self._check_reputation(entry)
            if event is not None:
                touched.append(event)

        return touched

    def _check_failed_logins(self, entry: AuditLogEntry) -> SecurityEvent | None:
        """
        Open or extend a failed_login event when the actor's latest
        consecutive failures inside the window reach the threshold.

        A successful login ends the run.
        """
        threshold = self.settings.FAILED_LOGIN_THRESHOLD
        window_start = entry.timestamp - timedelta(
            minutes=self.settings.FAILED_LOGIN_WINDOW_MINUTES
        )
        recent = self.db.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.actor_id == entry.actor_id,
                AuditLogEntry.action_type == ActionType.LOGIN,
                AuditLogEntry.id <= entry.id,
                AuditLogEntry.timestamp >= window_start,
            )
            .order_by(AuditLogEntry.id.desc())
        ).scalars().all()

        run = []
        for login in recent:
            if login.outcome != Outcome.FAILED:
                break
            run.append(login.id)

        if len(run) < threshold:
            return None

        run.reverse()
        return self._open_or_append(
            event_type=SecurityEventType.FAILED_LOGIN,
            severity=Severity.HIGH,
            account_id=entry.actor_id,
            description=(
                f"{len(run)} consecutive failed logins for {entry.actor_name} "
                f"within {self.settings.FAILED_LOGIN_WINDOW_MINUTES} minutes"
            ),
            evidence=run,
            entry=entry,
        )

    def _check_reputation(self, entry: AuditLogEntry) -> SecurityEvent | None:
        try:
            denylisted = lookup(
                self.oracle,
                entry.ip_address,
                self.settings.REPUTATION_TIMEOUT_SECONDS,
            )
        except Exception as e:
            # Fail open on any oracle failure: keep going on local
            # signals, but leave a trace.
            logger.warning(
                "reputation lookup failed, continuing without it",
                extra={
                    "sequence_id": entry.id,
                    "ip_address": entry.ip_address,
                    "error": type(e).__name__,
                },
            )
            self.audit.record(RawEvent(
                actor=SYSTEM_ACTOR,
                action="IP Reputation Lookup",
                action_type=ActionType.SYSTEM,
                resource=Resource(type="audit_entry", id=str(entry.id)),
                outcome=Outcome.WARNING,
                origin=Origin(ip_address=entry.ip_address),
                details=str(e),
            ))
            return None

        if not denylisted:
            return None
        return self._open_or_append(
            event_type=SecurityEventType.UNAUTHORIZED_ACCESS,
            severity=Severity.HIGH,
            account_id=entry.account_ref or entry.actor_id,
            description=(
                f"'{entry.action}' by {entry.actor_name} from "
                f"denylisted address {entry.ip_address}"
            ),
            evidence=[entry.id],
            entry=entry,
        )

    def raise_finding(self, finding: Finding) -> SecurityEvent:
        """Accept a candidate finding from another component."""
        return self._open_or_append(
            event_type=finding.event_type,
            severity=finding.severity,
            account_id=finding.account_id,
            description=finding.description,
            evidence=finding.evidence,
            ip_address=finding.ip_address,
            user_agent=finding.user_agent,
            location=finding.location,
        )

    # --- Event store ---

    def _open_or_append(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        account_id: str | None,
        description: str,
        evidence: list[int],
        entry: AuditLogEntry | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        location: str | None = None,
    ) -> SecurityEvent:
        if not evidence:
            raise ValidationError(
                "a security event requires at least one audit entry as evidence"
            )

        existing = self._find_open(event_type, account_id)
        if existing is not None:
            return self._extend(existing, severity, evidence)

        # A replayed trigger whose event was already closed must not
        # reopen a duplicate.
        prior = self._find_with_evidence(event_type, account_id, evidence)
        if prior is not None:
            return prior

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            account_id=account_id,
            description=description,
            ip_address=entry.ip_address if entry is not None else ip_address,
            user_agent=entry.user_agent if entry is not None else user_agent,
            location=entry.location if entry is not None else location,
            status=SecurityEventStatus.ACTIVE,
        )
        try:
            with self.db.begin_nested():
                self.db.add(event)
                self.db.flush()
        except IntegrityError:
            # Another writer opened the same event first; join it.
            existing = self._find_open(event_type, account_id)
            if existing is None:
                raise
            logger.info(
                "security event opened concurrently, appending instead",
                extra={"security_event_id": existing.id},
            )
            return self._extend(existing, severity, evidence)

        self._attach(event, evidence)
        self.db.flush()

        logger.info(
            "security event opened",
            extra={
                "security_event_id": event.id,
                "event_type": event_type.value,
                "account_id": account_id,
                "evidence": len(evidence),
            },
        )
        return event

    def _extend(
        self, event: SecurityEvent, severity: Severity, evidence: list[int]
    ) -> SecurityEvent:
        added = self._attach(event, evidence)
        event.severity = max_severity(event.severity, severity)
        self.db.flush()
        if added:
            logger.info(
                "evidence appended to open security event",
                extra={"security_event_id": event.id, "added": added},
            )
        return event

    def _find_open(
        self, event_type: SecurityEventType, account_id: str | None
    ) -> SecurityEvent | None:
        query = select(SecurityEvent).where(
            SecurityEvent.event_type == event_type,
            SecurityEvent.status.in_(OPEN_STATUSES),
        )
        if account_id is None:
            query = query.where(SecurityEvent.account_id.is_(None))
        else:
            query = query.where(SecurityEvent.account_id == account_id)
        return self.db.execute(
            query.order_by(SecurityEvent.id.desc()).limit(1).with_for_update()
        ).scalar_one_or_none()

    def _find_with_evidence(
        self,
        event_type: SecurityEventType,
        account_id: str | None,
        evidence: list[int],
    ) -> SecurityEvent | None:
        query = (
            select(SecurityEvent)
            .join(SecurityEventEvidence)
            .where(
                SecurityEvent.event_type == event_type,
                SecurityEventEvidence.sequence_id == evidence[-1],
            )
        )
        if account_id is not None:
            query = query.where(SecurityEvent.account_id == account_id)
        return self.db.execute(query.limit(1)).scalar_one_or_none()

    def _attach(self, event: SecurityEvent, evidence: list[int]) -> int:
        known = set(event.evidence_ids)
        added = 0
        for sequence_id in evidence:
            if sequence_id in known:
                continue
            event.evidence.append(SecurityEventEvidence(sequence_id=sequence_id))
            known.add(sequence_id)
            added += 1
        return added

    # --- Queries ---

    def get_event(self, event_id: int) -> SecurityEvent:
        event = self.db.get(SecurityEvent, event_id)
        if not event:
            raise NotFound(f"Security event {event_id} not found")
        return event

    def list_events(
        self,
        status: SecurityEventStatus | None = None,
        severity: Severity | None = None,
        event_type: SecurityEventType | None = None,
        account_id: str | None = None,
    ) -> list[SecurityEvent]:
        """Matching events, newest first."""
        query = select(SecurityEvent)
        if status is not None:
            query = query.where(SecurityEvent.status == status)
        if severity is not None:
            query = query.where(SecurityEvent.severity == severity)
        if event_type is not None:
            query = query.where(SecurityEvent.event_type == event_type)
        if account_id is not None:
            query = query.where(SecurityEvent.account_id == account_id)
        events = self.db.execute(
            query.order_by(SecurityEvent.id.desc())
        ).scalars().all()
        return list(events)

    def counts(self) -> dict:
        events = self.db.execute(
            select(SecurityEvent.status, SecurityEvent.severity)
        ).all()
        active = sum(1 for s, _ in events if s == SecurityEventStatus.ACTIVE)
        acknowledged = sum(1 for s, _ in events if s == SecurityEventStatus.ACKNOWLEDGED)
        threats = sum(
            1 for s, sev in events
            if s in OPEN_STATUSES and sev in (Severity.HIGH, Severity.CRITICAL)
        )
        return {
            "active_events": active,
            "acknowledged_events": acknowledged,
            "active_threats": threats,
        }

    # --- Operator transitions ---

    def acknowledge(
        self,
        event_id: int,
        actor_id: str,
        operator: Actor | None = None,
        origin: Origin | None = None,
    ) -> SecurityEvent:
        return self._transition(
            event_id,
            SecurityEventStatus.ACKNOWLEDGED,
            actor_id,
            operator,
            origin,
            acknowledged_by=actor_id,
            acknowledged_at=utcnow(),
        )

    def resolve(
        self,
        event_id: int,
        resolver_id: str,
        operator: Actor | None = None,
        origin: Origin | None = None,
    ) -> SecurityEvent:
        return self._terminalize(
            event_id, SecurityEventStatus.RESOLVED, resolver_id, operator, origin
        )

    def mark_false_positive(
        self,
        event_id: int,
        resolver_id: str,
        operator: Actor | None = None,
        origin: Origin | None = None,
    ) -> SecurityEvent:
        """
        Close an event as not a real threat.

        Score penalties or lockouts applied during the incident are
        left alone; reverting them is the caller's decision.
        """
        return self._terminalize(
            event_id, SecurityEventStatus.FALSE_POSITIVE, resolver_id, operator, origin
        )

    def _terminalize(
        self,
        event_id: int,
        target: SecurityEventStatus,
        resolver_id: str,
        operator: Actor | None,
        origin: Origin | None,
    ) -> SecurityEvent:
        if not resolver_id or not resolver_id.strip():
            raise ValidationError("resolver identity is required")
        return self._transition(
            event_id,
            target,
            resolver_id,
            operator,
            origin,
            resolved_by=resolver_id,
            resolved_at=utcnow(),
        )

    def _transition(
        self,
        event_id: int,
        target: SecurityEventStatus,
        actor_id: str,
        operator: Actor | None = None,
        origin: Origin | None = None,
        **values,
    ) -> SecurityEvent:
        """
        Compare-and-swap the event's status, then record the
        operator action in the audit log.

        `operator` is the authenticated principal; without one the
        acting id is recorded as the operator.
        """
        event = self.get_event(event_id)
        current = event.status

        if event.is_terminal:
            raise InvalidTransition(
                f"security event {event_id} is {current.value}; "
                f"no transition is allowed out of a terminal state"
            )
        if not event.can_transition_to(target):
            raise InvalidTransition(
                f"cannot transition security event {event_id} "
                f"from {current.value} to {target.value}"
            )

        result = self.db.execute(
            update(SecurityEvent)
            .where(SecurityEvent.id == event_id, SecurityEvent.status == current)
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(
                f"security event {event_id} was changed concurrently; "
                f"re-fetch and retry"
            )

        self.db.refresh(event)
        self.audit.record(RawEvent(
            actor=operator or Actor(id=actor_id, name=actor_id, role="operator"),
            action=TRANSITION_ACTIONS[target],
            action_type=ActionType.UPDATE,
            resource=Resource(type="security_event", id=str(event_id)),
            outcome=Outcome.SUCCESS,
            origin=origin or Origin(),
            details=f"Security event {event_id} moved from {current.value} to {target.value}",
            metadata={
                "from": current.value,
                "to": target.value,
                "acting_id": actor_id,
            },
        ))
        logger.info(
            "security event transitioned",
            extra={
                "security_event_id": event_id,
                "from": current.value,
                "to": target.value,
                "actor_id": actor_id,
            },
        )
        return event


def _critical_event_type(entry: AuditLogEntry) -> SecurityEventType:
    hint = (entry.metadata_ or {}).get("security_event_type")
    if hint:
        try:
            return SecurityEventType(hint)
        except ValueError:
            pass
    if entry.action_type == ActionType.SECURITY and entry.outcome == Outcome.FAILED:
        return SecurityEventType.UNAUTHORIZED_ACCESS
    return SecurityEventType.SUSPICIOUS_ACTIVITY

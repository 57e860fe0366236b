"""
Tests for the CorrelatorService.
"""

import threading
from datetime import datetime, timedelta

import httpx
import pytest

from audit_engine.config import Settings
from audit_engine.errors import (
    Conflict,
    InvalidTransition,
    NotFound,
    UpstreamTimeout,
    ValidationError,
)
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.enums import (
    ActionType,
    Outcome,
    SecurityEventStatus,
    SecurityEventType,
    Severity,
)
from audit_engine.models.security_event import SecurityEvent
from audit_engine.schemas.audit import Actor, Origin, RawEvent, Resource
from audit_engine.services.audit_service import AuditService
from audit_engine.services.correlator_service import CorrelatorService
from audit_engine.services.findings import Finding
from audit_engine.services.reputation import (
    HttpReputationOracle,
    StaticReputationOracle,
)

DENYLISTED = "203.0.113.66"


class FailingOracle:
    def is_denylisted(self, ip_address):
        raise UpstreamTimeout(f"reputation lookup for {ip_address} timed out")


class BrokenOracle:
    def is_denylisted(self, ip_address):
        raise RuntimeError("reputation backend crashed")


class SlowOracle:
    def __init__(self):
        self.release = threading.Event()

    def is_denylisted(self, ip_address):
        self.release.wait(2)
        return False


def record(db_session, actor_id="user-1", action="User Login", outcome="failed",
           ip_address="10.0.0.5", occurred_at=None, metadata=None, severity=None):
    entry = AuditService(db_session).record(RawEvent(
        actor=Actor(id=actor_id, name=actor_id, role="customer"),
        action=action,
        resource=Resource(type="session"),
        outcome=outcome,
        origin=Origin(ip_address=ip_address),
        metadata=metadata,
        severity=severity,
        occurred_at=occurred_at,
    ))
    db_session.flush()
    return entry


def correlator(db_session, oracle=None, settings=None):
    return CorrelatorService(
        db_session,
        settings=settings,
        oracle=oracle or StaticReputationOracle({DENYLISTED}),
    )


def open_event(db_session):
    service = correlator(db_session)
    entry = record(db_session, action="Change Permissions")
    [event] = service.observe(entry)
    db_session.commit()
    return event


class TestFailedLoginDetection:

    def test_five_failures_open_one_event(self, db_session):
        service = correlator(db_session)
        touched = []
        for _ in range(5):
            touched = service.observe(record(db_session))
        db_session.commit()

        events = service.list_events()
        assert len(events) == 1
        assert touched == events
        event = events[0]
        assert event.event_type == SecurityEventType.FAILED_LOGIN
        assert event.severity == Severity.HIGH
        assert event.account_id == "user-1"
        assert event.evidence_ids == [1, 2, 3, 4, 5]

    def test_sixth_failure_appends_evidence(self, db_session):
        service = correlator(db_session)
        for _ in range(6):
            service.observe(record(db_session))
        db_session.commit()

        events = service.list_events()
        assert len(events) == 1
        assert events[0].evidence_ids == [1, 2, 3, 4, 5, 6]

    def test_four_failures_do_not_trigger(self, db_session):
        service = correlator(db_session)
        for _ in range(4):
            service.observe(record(db_session))

        assert service.list_events() == []

    def test_success_breaks_the_run(self, db_session):
        service = correlator(db_session)
        for _ in range(3):
            service.observe(record(db_session))
        service.observe(record(db_session, outcome="success"))
        for _ in range(3):
            service.observe(record(db_session))

        assert service.list_events() == []

    def test_failures_outside_window_do_not_count(self, db_session):
        service = correlator(db_session)
        start = datetime(2024, 6, 1, 8, 0)
        for i in range(5):
            service.observe(record(
                db_session, occurred_at=start + timedelta(minutes=10 * i)
            ))

        assert service.list_events() == []

    def test_other_actors_failures_are_separate(self, db_session):
        service = correlator(db_session)
        for i in range(5):
            service.observe(record(db_session, actor_id=f"user-{i % 2}"))

        assert service.list_events() == []


class TestCriticalDetection:

    def test_critical_entry_opens_event(self, db_session):
        event = open_event(db_session)

        assert event.event_type == SecurityEventType.UNAUTHORIZED_ACCESS
        assert event.severity == Severity.CRITICAL
        assert event.status == SecurityEventStatus.ACTIVE
        assert event.evidence_ids == [1]

    def test_metadata_hint_sets_event_type(self, db_session):
        service = correlator(db_session)
        entry = record(
            db_session,
            action="Update Address",
            outcome="success",
            severity="critical",
            metadata={"security_event_type": "data_breach"},
        )
        [event] = service.observe(entry)

        assert event.event_type == SecurityEventType.DATA_BREACH

    def test_replay_does_not_duplicate(self, db_session):
        service = correlator(db_session)
        entry = record(db_session, action="Change Permissions")
        service.observe(entry)
        service.observe(entry)
        db_session.commit()

        events = service.list_events()
        assert len(events) == 1
        assert events[0].evidence_ids == [entry.id]

    def test_replay_after_resolution_does_not_reopen(self, db_session):
        service = correlator(db_session)
        entry = record(db_session, action="Change Permissions")
        [event] = service.observe(entry)
        service.resolve(event.id, "analyst-1")
        db_session.commit()

        service.observe(entry)
        assert len(service.list_events()) == 1


class TestReputation:

    def test_denylisted_login_opens_event(self, db_session):
        service = correlator(db_session)
        entry = record(db_session, outcome="success", ip_address=DENYLISTED)
        [event] = service.observe(entry)

        assert event.event_type == SecurityEventType.UNAUTHORIZED_ACCESS
        assert event.severity == Severity.HIGH
        assert event.ip_address == DENYLISTED

    def test_oracle_failure_records_warning(self, db_session):
        service = correlator(db_session, oracle=FailingOracle())
        entry = record(db_session, outcome="success")

        assert service.observe(entry) == []
        warning = db_session.get(AuditLogEntry, entry.id + 1)
        assert warning.action_type == ActionType.SYSTEM
        assert warning.outcome == Outcome.WARNING
        assert warning.resource_id == str(entry.id)

    def test_slow_oracle_times_out(self, db_session):
        settings = Settings()
        settings.REPUTATION_TIMEOUT_SECONDS = 0.05
        oracle = SlowOracle()
        service = correlator(db_session, oracle=oracle, settings=settings)
        try:
            entry = record(db_session, outcome="success")
            assert service.observe(entry) == []
        finally:
            oracle.release.set()

        warning = db_session.get(AuditLogEntry, entry.id + 1)
        assert warning.outcome == Outcome.WARNING

    def test_failed_logins_still_detected_when_oracle_down(self, db_session):
        service = correlator(db_session, oracle=FailingOracle())
        for _ in range(5):
            service.observe(record(db_session))

        events = service.list_events(event_type=SecurityEventType.FAILED_LOGIN)
        assert len(events) == 1

    @pytest.mark.parametrize("body", ["<html>maintenance</html>", "[]", "null"])
    def test_unreadable_oracle_answer_fails_open(self, db_session, body):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text=body)
        )
        oracle = HttpReputationOracle(
            "http://reputation.test", timeout=1.0, transport=transport
        )
        service = correlator(db_session, oracle=oracle)
        entry = record(db_session, outcome="success")

        assert service.observe(entry) == []
        warning = db_session.get(AuditLogEntry, entry.id + 1)
        assert warning.action_type == ActionType.SYSTEM
        assert warning.outcome == Outcome.WARNING

    def test_http_oracle_reads_denylist_answer(self, db_session):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"denylisted": request.url.path.endswith(DENYLISTED)}
            )
        )
        oracle = HttpReputationOracle(
            "http://reputation.test", timeout=1.0, transport=transport
        )
        service = correlator(db_session, oracle=oracle)

        assert service.observe(record(db_session, outcome="success")) == []
        [event] = service.observe(
            record(db_session, outcome="success", ip_address=DENYLISTED)
        )
        assert event.event_type == SecurityEventType.UNAUTHORIZED_ACCESS

    def test_unexpected_oracle_error_fails_open(self, db_session):
        service = correlator(db_session, oracle=BrokenOracle())
        entry = record(db_session, outcome="success")

        assert service.observe(entry) == []
        warning = db_session.get(AuditLogEntry, entry.id + 1)
        assert warning.outcome == Outcome.WARNING
        assert "reputation backend crashed" in warning.details


class TestFindings:

    def test_finding_requires_evidence(self, db_session):
        with pytest.raises(ValidationError, match="at least one audit entry"):
            correlator(db_session).raise_finding(Finding(
                event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                severity=Severity.MEDIUM,
                account_id="acct-1",
                description="no evidence",
            ))

    def test_finding_escalates_open_event(self, db_session):
        service = correlator(db_session)
        first = record(db_session, outcome="success")
        second = record(db_session, outcome="success")
        service.raise_finding(Finding(
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.MEDIUM,
            account_id="acct-1",
            description="score drop",
            evidence=[first.id],
        ))
        event = service.raise_finding(Finding(
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.HIGH,
            account_id="acct-1",
            description="kyc rejection",
            evidence=[second.id],
        ))

        assert len(service.list_events()) == 1
        assert event.severity == Severity.HIGH
        assert event.evidence_ids == [first.id, second.id]

    def test_concurrent_open_joins_existing_event(self, db_session, session_factory):
        first = record(db_session, outcome="success")
        second = record(db_session, outcome="success")
        db_session.commit()

        other = session_factory()
        opened = correlator(other).raise_finding(Finding(
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.MEDIUM,
            account_id="acct-1",
            description="score drop",
            evidence=[first.id],
        ))
        other.commit()

        service = correlator(db_session)
        lookup_open = service._find_open
        lookups = []

        def stale_then_fresh(event_type, account_id):
            # The first lookup ran before the other writer committed.
            lookups.append(event_type)
            if len(lookups) == 1:
                return None
            return lookup_open(event_type, account_id)

        service._find_open = stale_then_fresh
        event = service.raise_finding(Finding(
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.HIGH,
            account_id="acct-1",
            description="critical entry",
            evidence=[second.id],
        ))
        db_session.commit()

        assert event.id == opened.id
        assert event.severity == Severity.HIGH
        assert event.evidence_ids == [first.id, second.id]
        assert len(service.list_events(event_type=SecurityEventType.SUSPICIOUS_ACTIVITY)) == 1


class TestTransitions:

    def test_acknowledge_then_resolve(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)

        event = service.acknowledge(event.id, "analyst-1")
        assert event.status == SecurityEventStatus.ACKNOWLEDGED
        assert event.acknowledged_by == "analyst-1"

        event = service.resolve(event.id, "analyst-2")
        assert event.status == SecurityEventStatus.RESOLVED
        assert event.resolved_by == "analyst-2"
        assert event.resolved_at is not None

    def test_transitions_are_recorded(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)
        operator = Actor(id="admin-1", name="Alice Admin", role="admin")

        service.acknowledge(event.id, "admin-1", operator)
        service.mark_false_positive(event.id, "analyst-7", operator)
        db_session.commit()

        entries = db_session.query(AuditLogEntry).filter_by(
            resource_type="security_event", resource_id=str(event.id)
        ).order_by(AuditLogEntry.id).all()
        assert [e.action for e in entries] == [
            "Acknowledge Security Event",
            "Mark Security Event False Positive",
        ]
        assert all(e.actor_id == "admin-1" for e in entries)
        assert entries[1].metadata_["to"] == "false_positive"
        assert entries[1].metadata_["acting_id"] == "analyst-7"

    def test_rejected_transition_is_not_recorded(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)
        service.resolve(event.id, "analyst-1")
        db_session.commit()

        with pytest.raises(InvalidTransition):
            service.acknowledge(event.id, "analyst-2")

        entries = db_session.query(AuditLogEntry).filter_by(
            resource_type="security_event"
        ).all()
        assert [e.action for e in entries] == ["Resolve Security Event"]

    def test_terminal_event_rejects_transitions(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)
        service.mark_false_positive(event.id, "analyst-1")

        with pytest.raises(InvalidTransition):
            service.acknowledge(event.id, "analyst-1")
        with pytest.raises(InvalidTransition):
            service.resolve(event.id, "analyst-1")

    def test_resolver_required(self, db_session):
        event = open_event(db_session)
        with pytest.raises(ValidationError):
            correlator(db_session).resolve(event.id, "  ")

    def test_unknown_event(self, db_session):
        with pytest.raises(NotFound):
            correlator(db_session).acknowledge(999, "analyst-1")

    def test_new_trigger_after_resolution_opens_new_event(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)
        service.resolve(event.id, "analyst-1")

        entry = record(db_session, action="Change Permissions")
        [reopened] = service.observe(entry)
        assert reopened.id != event.id
        assert reopened.status == SecurityEventStatus.ACTIVE

    def test_concurrent_resolution_conflicts(self, db_session, session_factory):
        event = open_event(db_session)

        other = session_factory()
        stale = other.get(SecurityEvent, event.id)
        assert stale.status == SecurityEventStatus.ACTIVE

        correlator(db_session).resolve(event.id, "analyst-1")
        db_session.commit()

        with pytest.raises(Conflict):
            correlator(other).resolve(event.id, "analyst-2")

        db_session.refresh(event)
        assert event.status == SecurityEventStatus.RESOLVED
        assert event.resolved_by == "analyst-1"

    def test_counts(self, db_session):
        event = open_event(db_session)
        service = correlator(db_session)
        service.acknowledge(event.id, "analyst-1")

        assert service.counts() == {
            "active_events": 0,
            "acknowledged_events": 1,
            "active_threats": 1,
        }

"""
Tests for the RiskScoringService.
"""

import pytest

from audit_engine.errors import NotFound, ValidationError
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.enums import (
    ActionType,
    RiskLevel,
    ScoreTier,
    SecurityEventType,
    Severity,
    TwoFactorMethod,
)
from audit_engine.models.security_profile import SecurityAccountProfile
from audit_engine.schemas.audit import Actor, Origin, RawEvent, Resource
from audit_engine.services.audit_service import AuditService
from audit_engine.services.risk_scoring_service import (
    RiskScoringService,
    compute_score,
    risk_level_for,
    score_tier,
)

ADMIN = Actor(id="admin-1", name="Alice Admin", role="admin")


def login(db_session, account_id, outcome):
    entry = AuditService(db_session).record(RawEvent(
        actor=Actor(id=account_id, name=account_id, role="customer"),
        action="User Login",
        resource=Resource(type="session"),
        outcome=outcome,
        origin=Origin(ip_address="10.0.0.5"),
    ))
    db_session.flush()
    return entry


def build_fair_profile(service, account_id="acct-1"):
    """2FA + one trusted device + two allowed IPs = 20 + 15 + 20."""
    service.set_two_factor(account_id, True, TwoFactorMethod.APP, ADMIN)
    service.register_device(account_id, "dev-1", "Laptop", True, ADMIN)
    service.allow_ip(account_id, "10.0.0.1", ADMIN)
    return service.allow_ip(account_id, "10.0.0.2", ADMIN)


class TestComputeScore:

    def test_fair_profile_scores_55(self, db_session):
        profile = build_fair_profile(RiskScoringService(db_session))
        db_session.commit()

        assert profile.score == 55
        assert score_tier(profile.score) == ScoreTier.FAIR

    def test_recompute_is_idempotent(self, db_session):
        service = RiskScoringService(db_session)
        build_fair_profile(service)
        db_session.commit()

        first = service.recompute("acct-1").score
        second = service.recompute("acct-1").score
        assert first == second == 55

    def test_untrusted_device_loses_bonus(self, db_session):
        service = RiskScoringService(db_session)
        service.register_device("acct-1", "dev-1", "Laptop", True, ADMIN)
        profile = service.register_device("acct-1", "dev-2", "Phone", False, ADMIN)

        assert profile.score == 0

    def test_allowed_ip_bonus_is_capped(self, db_session):
        service = RiskScoringService(db_session)
        for i in range(5):
            profile = service.allow_ip("acct-1", f"10.0.0.{i + 1}", ADMIN)

        assert len(profile.allowed_ips) == 5
        assert profile.score == 30

    def test_score_is_clamped(self):
        profile = SecurityAccountProfile(
            account_id="x",
            two_factor_enabled=False,
            backup_codes_generated=False,
            failed_login_count=9,
            locked=True,
        )
        assert compute_score(profile) == 0

    @pytest.mark.parametrize("score, tier", [
        (100, ScoreTier.EXCELLENT),
        (80, ScoreTier.EXCELLENT),
        (79, ScoreTier.GOOD),
        (60, ScoreTier.GOOD),
        (40, ScoreTier.FAIR),
        (39, ScoreTier.POOR),
        (0, ScoreTier.POOR),
    ])
    def test_tiers(self, score, tier):
        assert score_tier(score) == tier

    def test_risk_level_without_profile_is_high(self):
        assert risk_level_for(None) == RiskLevel.HIGH


class TestObserve:

    def test_failed_logins_lock_account(self, db_session):
        findings = []
        service = RiskScoringService(db_session, on_finding=findings.append)

        for _ in range(5):
            profile = service.observe(login(db_session, "acct-1", "failed"))

        assert profile.failed_login_count == 5
        assert profile.locked is True
        assert profile.locked_at is not None
        assert profile.score == 0
        assert [f.event_type for f in findings] == [SecurityEventType.ACCOUNT_LOCKED]
        assert findings[0].severity == Severity.HIGH

    def test_success_resets_counter(self, db_session):
        service = RiskScoringService(db_session)
        for _ in range(3):
            service.observe(login(db_session, "acct-1", "failed"))
        profile = service.observe(login(db_session, "acct-1", "success"))

        assert profile.failed_login_count == 0
        assert profile.last_login_at is not None
        assert profile.locked is False

    def test_replayed_entry_is_skipped(self, db_session):
        service = RiskScoringService(db_session)
        entry = login(db_session, "acct-1", "failed")
        service.observe(entry)
        profile = service.observe(entry)

        assert profile.failed_login_count == 1
        assert profile.last_sequence_id == entry.id

    def test_entry_without_account_is_ignored(self, db_session):
        entry = AuditService(db_session).record(RawEvent(
            actor=ADMIN,
            action="Nightly Backup",
            resource=Resource(type="database"),
            outcome="success",
        ))
        assert RiskScoringService(db_session).observe(entry) is None

    def test_score_drop_below_threshold_raises_finding(self, db_session):
        findings = []
        service = RiskScoringService(db_session, on_finding=findings.append)
        build_fair_profile(service)

        service.observe(login(db_session, "acct-1", "failed"))
        service.observe(login(db_session, "acct-1", "failed"))
        assert findings == []

        trigger = login(db_session, "acct-1", "failed")
        profile = service.observe(trigger)

        assert profile.score == 35
        assert len(findings) == 1
        assert findings[0].event_type == SecurityEventType.SUSPICIOUS_ACTIVITY
        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].evidence == [trigger.id]


class TestOperatorActions:

    def test_unlock_unknown_account(self, db_session):
        with pytest.raises(NotFound):
            RiskScoringService(db_session).unlock("missing", ADMIN)

    def test_unlock_clears_lockout_and_records_entry(self, db_session):
        service = RiskScoringService(db_session)
        for _ in range(5):
            service.observe(login(db_session, "acct-1", "failed"))

        profile = service.unlock("acct-1", ADMIN)
        db_session.commit()

        assert profile.locked is False
        assert profile.failed_login_count == 0
        entries = db_session.query(AuditLogEntry).filter_by(action="Unlock Account").all()
        assert len(entries) == 1
        assert entries[0].action_type == ActionType.SECURITY
        assert entries[0].resource_id == "acct-1"

    def test_two_factor_defaults_to_app(self, db_session):
        profile = RiskScoringService(db_session).set_two_factor(
            "acct-1", True, None, ADMIN
        )
        assert profile.two_factor_method == TwoFactorMethod.APP
        assert profile.score == 20

    def test_invalid_ip_rejected(self, db_session):
        with pytest.raises(ValidationError):
            RiskScoringService(db_session).allow_ip("acct-1", "not-an-ip", ADMIN)

    def test_duplicate_ip_is_noop(self, db_session):
        service = RiskScoringService(db_session)
        service.allow_ip("acct-1", "10.0.0.1", ADMIN)
        profile = service.allow_ip("acct-1", " 10.0.0.1 ", ADMIN)

        assert profile.ip_allow_list == ["10.0.0.1"]

    def test_remove_ip(self, db_session):
        service = RiskScoringService(db_session)
        service.allow_ip("acct-1", "10.0.0.1", ADMIN)
        profile = service.remove_ip("acct-1", "10.0.0.1", ADMIN)

        assert profile.ip_allow_list == []
        assert profile.score == 0

    def test_remove_unknown_ip(self, db_session):
        service = RiskScoringService(db_session)
        service.allow_ip("acct-1", "10.0.0.1", ADMIN)
        with pytest.raises(NotFound):
            service.remove_ip("acct-1", "10.0.0.2", ADMIN)

    def test_metrics(self, db_session):
        service = RiskScoringService(db_session)
        service.set_two_factor("acct-1", True, TwoFactorMethod.SMS, ADMIN)
        service.allow_ip("acct-2", "10.0.0.1", ADMIN)
        db_session.commit()

        metrics = service.metrics()
        assert metrics["total_accounts"] == 2
        assert metrics["two_factor_enabled"] == 1
        assert metrics["locked_accounts"] == 0
        assert metrics["average_score"] == 15.0

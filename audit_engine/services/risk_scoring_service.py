"""
Risk scoring service — per-account security profiles.

The score is a bounded [0, 100] weighted sum over the account's
authentication hygiene. It is always derived from the profile,
never accumulated, so recomputing with no new events gives the
same number.

Weights:
    +20  two-factor enabled
    +10  backup codes generated
    +15  every registered device is trusted (at least one device)
    +10  per allow-listed IP, up to 3
    -20  per consecutive failed login beyond 2
    -30  account locked

Each profile row doubles as the per-account lock: every mutation
selects it FOR UPDATE first. Accounts never lock each other.
"""

import ipaddress
import logging

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from audit_engine.config import Settings, get_settings
from audit_engine.errors import NotFound, ValidationError
from audit_engine.models.audit_log import AuditLogEntry
from audit_engine.models.base import utcnow
from audit_engine.models.enums import (
    ActionType,
    Outcome,
    RiskLevel,
    ScoreTier,
    SecurityEventType,
    Severity,
    TwoFactorMethod,
)
from audit_engine.models.security_profile import (
    SecurityAccountProfile,
    TrustedDevice,
    AllowedIP,
)
from audit_engine.schemas.audit import Actor, Origin, RawEvent, Resource
from audit_engine.services.audit_service import AuditService
from audit_engine.services.findings import Finding, FindingSink

logger = logging.getLogger(__name__)

TWO_FACTOR_WEIGHT = 20
BACKUP_CODES_WEIGHT = 10
TRUSTED_DEVICES_WEIGHT = 15
ALLOWED_IP_WEIGHT = 10
ALLOWED_IP_CAP = 3
FAILED_LOGIN_GRACE = 2
FAILED_LOGIN_PENALTY = 20
LOCKED_PENALTY = 30

MIN_SCORE = 0
MAX_SCORE = 100

# Lower bound of each tier, highest first.
TIER_THRESHOLDS = [
    (80, ScoreTier.EXCELLENT),
    (60, ScoreTier.GOOD),
    (40, ScoreTier.FAIR),
]

TIER_RISK = {
    ScoreTier.EXCELLENT: RiskLevel.LOW,
    ScoreTier.GOOD: RiskLevel.LOW,
    ScoreTier.FAIR: RiskLevel.MEDIUM,
    ScoreTier.POOR: RiskLevel.HIGH,
}


def compute_score(profile: SecurityAccountProfile) -> int:
    """Score a profile. Pure: reads the profile, changes nothing."""
    score = 0
    if profile.two_factor_enabled:
        score += TWO_FACTOR_WEIGHT
    if profile.backup_codes_generated:
        score += BACKUP_CODES_WEIGHT
    if profile.devices and all(d.trusted for d in profile.devices):
        score += TRUSTED_DEVICES_WEIGHT
    score += ALLOWED_IP_WEIGHT * min(len(profile.allowed_ips), ALLOWED_IP_CAP)
    score -= FAILED_LOGIN_PENALTY * max(0, profile.failed_login_count - FAILED_LOGIN_GRACE)
    if profile.locked:
        score -= LOCKED_PENALTY
    return max(MIN_SCORE, min(MAX_SCORE, score))


def score_tier(score: int) -> ScoreTier:
    for lower_bound, tier in TIER_THRESHOLDS:
        if score >= lower_bound:
            return tier
    return ScoreTier.POOR


def risk_level_for(profile: SecurityAccountProfile | None) -> RiskLevel:
    """KYC risk level derived from the account's security posture."""
    if profile is None or profile.locked:
        return RiskLevel.HIGH
    return TIER_RISK[score_tier(profile.score)]


class RiskScoringService:

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        on_finding: FindingSink | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.on_finding = on_finding
        self.audit = AuditService(db)

    # --- Profile store ---

    def get_profile(self, account_id: str) -> SecurityAccountProfile:
        profile = self.db.get(SecurityAccountProfile, account_id)
        if not profile:
            raise NotFound(f"Security profile for account {account_id} not found")
        return profile

    def find_profile(self, account_id: str) -> SecurityAccountProfile | None:
        return self.db.get(SecurityAccountProfile, account_id)

    def put_profile(self, profile: SecurityAccountProfile) -> SecurityAccountProfile:
        profile.score = max(MIN_SCORE, min(MAX_SCORE, profile.score))
        self.db.add(profile)
        self.db.flush()
        return profile

    def _lock_profile(self, account_id: str) -> SecurityAccountProfile:
        """Select the profile FOR UPDATE, creating it on first reference."""
        profile = self.db.execute(
            select(SecurityAccountProfile)
            .where(SecurityAccountProfile.account_id == account_id)
            .with_for_update()
        ).scalar_one_or_none()

        if profile is None:
            profile = SecurityAccountProfile(
                account_id=account_id,
                two_factor_enabled=False,
                backup_codes_generated=False,
                failed_login_count=0,
                locked=False,
                score=0,
                last_sequence_id=0,
            )
            self.put_profile(profile)
        return profile

    # --- Scoring ---

    def recompute(
        self, account_id: str, trigger_sequence_id: int | None = None
    ) -> SecurityAccountProfile:
        """
        Recompute and store the account's score.

        If the score drops from at-or-above the low-score threshold
        to below it, a candidate finding goes to the correlator with
        the triggering entry as evidence.
        """
        profile = self._lock_profile(account_id)
        previous = profile.score
        current = compute_score(profile)

        if current != previous:
            profile.score = current
        profile.scored_at = utcnow()
        self.db.flush()

        threshold = self.settings.LOW_SCORE_THRESHOLD
        if previous >= threshold > current:
            evidence_id = trigger_sequence_id or profile.last_sequence_id
            if evidence_id:
                self._emit(Finding(
                    event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                    severity=Severity.MEDIUM,
                    account_id=account_id,
                    description=(
                        f"Security score for account {account_id} dropped "
                        f"from {previous} to {current} (threshold {threshold})"
                    ),
                    evidence=[evidence_id],
                ))
            else:
                logger.warning(
                    "score dropped below threshold with no evidence entry",
                    extra={"account_id": account_id, "score": current},
                )
        return profile

    def observe(self, entry: AuditLogEntry) -> SecurityAccountProfile | None:
        """
        Apply one audit entry to the account it references.

        Login outcomes move the failed-login counter; reaching the
        configured attempt limit locks the account. Entries at or
        below the profile's last applied sequence id are replays
        and are skipped.
        """
        account_id = entry.account_ref
        if account_id is None:
            return None

        profile = self._lock_profile(account_id)
        if entry.id <= profile.last_sequence_id:
            return profile

        if entry.action_type == ActionType.LOGIN:
            if entry.outcome == Outcome.FAILED:
                profile.failed_login_count += 1
                if (
                    not profile.locked
                    and profile.failed_login_count >= self.settings.MAX_LOGIN_ATTEMPTS
                ):
                    profile.locked = True
                    profile.locked_at = utcnow()
                    logger.info(
                        "account locked after failed logins",
                        extra={
                            "account_id": account_id,
                            "failed_logins": profile.failed_login_count,
                        },
                    )
                    self._emit(Finding(
                        event_type=SecurityEventType.ACCOUNT_LOCKED,
                        severity=Severity.HIGH,
                        account_id=account_id,
                        description=(
                            f"Account {account_id} locked after "
                            f"{profile.failed_login_count} consecutive failed logins"
                        ),
                        evidence=[entry.id],
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        location=entry.location,
                    ))
            elif entry.outcome == Outcome.SUCCESS:
                profile.failed_login_count = 0
                profile.last_login_at = entry.timestamp

        profile.last_sequence_id = entry.id
        self.db.flush()
        return self.recompute(account_id, trigger_sequence_id=entry.id)

    def _emit(self, finding: Finding) -> None:
        if self.on_finding is None:
            logger.info(
                "finding raised with no correlator attached",
                extra={"event_type": finding.event_type.value, "account_id": finding.account_id},
            )
            return
        self.on_finding(finding)

    # --- Operator actions ---

    def _record(
        self,
        account_id: str,
        action: str,
        actor: Actor,
        origin: Origin | None,
        details: str,
        metadata: dict | None = None,
    ) -> AuditLogEntry:
        return self.audit.record(RawEvent(
            actor=actor,
            action=action,
            action_type=ActionType.SECURITY,
            resource=Resource(type="account", id=account_id),
            outcome=Outcome.SUCCESS,
            origin=origin or Origin(),
            details=details,
            metadata=metadata,
        ))

    def _apply(
        self,
        profile: SecurityAccountProfile,
        action: str,
        actor: Actor,
        origin: Origin | None,
        details: str,
        metadata: dict | None = None,
    ) -> SecurityAccountProfile:
        self.db.flush()
        entry = self._record(profile.account_id, action, actor, origin, details, metadata)
        return self.recompute(profile.account_id, trigger_sequence_id=entry.id)

    def unlock(
        self, account_id: str, actor: Actor, origin: Origin | None = None
    ) -> SecurityAccountProfile:
        """
        Clear the lockout flag and the failed-login counter.

        This is the only operation that clears a lockout.
        """
        self.get_profile(account_id)
        profile = self._lock_profile(account_id)
        was_locked = profile.locked
        profile.locked = False
        profile.locked_at = None
        profile.failed_login_count = 0
        return self._apply(
            profile,
            "Unlock Account",
            actor,
            origin,
            f"Account {account_id} unlocked",
            {"was_locked": was_locked},
        )

    def set_two_factor(
        self,
        account_id: str,
        enabled: bool,
        method: TwoFactorMethod | None,
        actor: Actor,
        origin: Origin | None = None,
    ) -> SecurityAccountProfile:
        if enabled and method is None:
            method = TwoFactorMethod.APP
        profile = self._lock_profile(account_id)
        profile.two_factor_enabled = enabled
        profile.two_factor_method = method if enabled else None
        state = "enabled" if enabled else "disabled"
        return self._apply(
            profile,
            f"Two-Factor {state.capitalize()}",
            actor,
            origin,
            f"Two-factor authentication {state} for account {account_id}",
            {"method": method.value if enabled else None},
        )

    def generate_backup_codes(
        self, account_id: str, actor: Actor, origin: Origin | None = None
    ) -> SecurityAccountProfile:
        profile = self._lock_profile(account_id)
        profile.backup_codes_generated = True
        return self._apply(
            profile,
            "Generate Backup Codes",
            actor,
            origin,
            f"Backup codes generated for account {account_id}",
        )

    def register_device(
        self,
        account_id: str,
        device_id: str,
        device_name: str,
        trusted: bool,
        actor: Actor,
        origin: Origin | None = None,
    ) -> SecurityAccountProfile:
        """Add a device, or update the trust flag of a known one."""
        profile = self._lock_profile(account_id)
        device = next(
            (d for d in profile.devices if d.device_id == device_id), None
        )
        if device is None:
            device = TrustedDevice(
                device_id=device_id, device_name=device_name, trusted=trusted
            )
            profile.devices.append(device)
        else:
            device.device_name = device_name
            device.trusted = trusted
        device.last_used = utcnow()
        return self._apply(
            profile,
            "Register Device",
            actor,
            origin,
            f"Device {device_id} registered for account {account_id}",
            {"device_id": device_id, "trusted": trusted},
        )

    def allow_ip(
        self,
        account_id: str,
        ip_address: str,
        actor: Actor,
        origin: Origin | None = None,
    ) -> SecurityAccountProfile:
        address = _normalize_ip(ip_address)
        profile = self._lock_profile(account_id)
        if address in profile.ip_allow_list:
            return profile
        profile.allowed_ips.append(AllowedIP(ip_address=address))
        return self._apply(
            profile,
            "Add Allowed IP",
            actor,
            origin,
            f"IP {address} allow-listed for account {account_id}",
            {"ip_address": address},
        )

    def remove_ip(
        self,
        account_id: str,
        ip_address: str,
        actor: Actor,
        origin: Origin | None = None,
    ) -> SecurityAccountProfile:
        address = _normalize_ip(ip_address)
        profile = self._lock_profile(account_id)
        match = next((ip for ip in profile.allowed_ips if ip.ip_address == address), None)
        if match is None:
            raise NotFound(f"IP {address} is not allow-listed for account {account_id}")
        profile.allowed_ips.remove(match)
        return self._apply(
            profile,
            "Remove Allowed IP",
            actor,
            origin,
            f"IP {address} removed from allow-list of account {account_id}",
            {"ip_address": address},
        )

    def metrics(self) -> dict:
        total, two_factor, locked, average = self.db.execute(
            select(
                func.count(SecurityAccountProfile.account_id),
                func.count(SecurityAccountProfile.account_id).filter(
                    SecurityAccountProfile.two_factor_enabled.is_(True)
                ),
                func.count(SecurityAccountProfile.account_id).filter(
                    SecurityAccountProfile.locked.is_(True)
                ),
                func.avg(SecurityAccountProfile.score),
            )
        ).one()
        return {
            "total_accounts": total,
            "two_factor_enabled": two_factor,
            "locked_accounts": locked,
            "average_score": round(float(average or 0), 1),
        }


def _normalize_ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as e:
        raise ValidationError(f"'{value}' is not a valid IP address") from e

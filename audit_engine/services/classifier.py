"""
Action classifier.

Assigns action type and severity to a raw event from a fixed
table keyed by (action type, outcome). A pair that is missing
from the table is not a classifiable action and is rejected.
"""

import re

from audit_engine.errors import ValidationError
from audit_engine.models.enums import ActionType, Outcome, Severity


CLASSIFICATION_TABLE: dict[tuple[ActionType, Outcome], Severity] = {
    (ActionType.LOGIN, Outcome.SUCCESS): Severity.LOW,
    (ActionType.LOGIN, Outcome.WARNING): Severity.LOW,
    (ActionType.LOGIN, Outcome.FAILED): Severity.MEDIUM,
    (ActionType.LOGOUT, Outcome.SUCCESS): Severity.LOW,
    (ActionType.LOGOUT, Outcome.WARNING): Severity.LOW,
    (ActionType.READ, Outcome.SUCCESS): Severity.LOW,
    (ActionType.READ, Outcome.FAILED): Severity.MEDIUM,
    (ActionType.CREATE, Outcome.SUCCESS): Severity.LOW,
    (ActionType.CREATE, Outcome.WARNING): Severity.MEDIUM,
    (ActionType.CREATE, Outcome.FAILED): Severity.MEDIUM,
    (ActionType.UPDATE, Outcome.SUCCESS): Severity.LOW,
    (ActionType.UPDATE, Outcome.WARNING): Severity.MEDIUM,
    (ActionType.UPDATE, Outcome.FAILED): Severity.MEDIUM,
    (ActionType.DELETE, Outcome.SUCCESS): Severity.MEDIUM,
    (ActionType.DELETE, Outcome.WARNING): Severity.HIGH,
    (ActionType.DELETE, Outcome.FAILED): Severity.HIGH,
    (ActionType.SECURITY, Outcome.SUCCESS): Severity.HIGH,
    (ActionType.SECURITY, Outcome.WARNING): Severity.HIGH,
    (ActionType.SECURITY, Outcome.FAILED): Severity.CRITICAL,
    (ActionType.SYSTEM, Outcome.SUCCESS): Severity.LOW,
    (ActionType.SYSTEM, Outcome.WARNING): Severity.MEDIUM,
    (ActionType.SYSTEM, Outcome.FAILED): Severity.HIGH,
}

SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

# Keywords in an action label that imply its type, checked in order.
_LABEL_KEYWORDS: list[tuple[re.Pattern, ActionType]] = [
    (re.compile(r"\blog\s?out\b|\bsign\s?out\b", re.I), ActionType.LOGOUT),
    (re.compile(r"\blog\s?in\b|\bsign\s?in\b", re.I), ActionType.LOGIN),
    (re.compile(r"\bsecurity\b|\b2fa\b|\bpermission|\bprivilege", re.I), ActionType.SECURITY),
    (re.compile(r"\bdelete|\bremove", re.I), ActionType.DELETE),
    (re.compile(r"\bcreate|\badd\b|\bregister", re.I), ActionType.CREATE),
    (re.compile(r"\bupdate|\bedit\b|\bchange|\bapprove|\breject", re.I), ActionType.UPDATE),
    (re.compile(r"\bview|\bread\b|\bexport|\blist\b", re.I), ActionType.READ),
    (re.compile(r"\bsystem\b|\bbackup|\bmaintenance", re.I), ActionType.SYSTEM),
]


def infer_action_type(action: str) -> ActionType | None:
    for pattern, action_type in _LABEL_KEYWORDS:
        if pattern.search(action):
            return action_type
    return None


def max_severity(a: Severity, b: Severity) -> Severity:
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b


def classify(
    action: str,
    action_type: ActionType | None,
    outcome: Outcome,
    requested_severity: Severity | None = None,
) -> tuple[ActionType, Severity]:
    """
    Return the (action type, severity) for an action.

    Raises ValidationError when the type cannot be determined or
    the (type, outcome) pair is not classifiable.
    """
    if action_type is None:
        action_type = infer_action_type(action)
        if action_type is None:
            raise ValidationError(
                f"cannot determine action type for action '{action}'; "
                f"supply action_type explicitly"
            )

    severity = CLASSIFICATION_TABLE.get((action_type, outcome))
    if severity is None:
        raise ValidationError(
            f"action type '{action_type.value}' with outcome "
            f"'{outcome.value}' is not a classifiable action"
        )

    if requested_severity is not None:
        severity = max_severity(severity, requested_severity)

    return action_type, severity

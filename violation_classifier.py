# violation_classifier.py
# -----------------------------------------------------------------------------
# Maps raw proctoring signals to weighted violation records and decides the
# session status from the cumulative suspicion score.
#   score <  suspicious_threshold          -> active
#   score <  flagged_threshold             -> suspicious
#   score >= flagged_threshold             -> flagged
# Weights and thresholds are policy (env-configurable), the shape is fixed.
# -----------------------------------------------------------------------------
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ViolationType(str, Enum):
    TAB_SWITCH = "tab_switch"
    FULLSCREEN_EXIT = "fullscreen_exit"
    INACTIVITY = "inactivity"
    DEVICE_LOSS = "device_loss"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    SUSPICIOUS = "suspicious"
    FLAGGED = "flagged"
    ENDED = "ended"


_STATUS_ORDER = {
    SessionStatus.ACTIVE: 0,
    SessionStatus.SUSPICIOUS: 1,
    SessionStatus.FLAGGED: 2,
}

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[proctor] ignoring non-integer {name}={raw!r}; using {default}")
        return default


@dataclass(frozen=True)
class ProctoringPolicy:
    weights: Dict[str, int] = field(default_factory=lambda: {
        ViolationType.TAB_SWITCH.value: 10,
        ViolationType.FULLSCREEN_EXIT.value: 15,
        ViolationType.INACTIVITY.value: 5,
        ViolationType.DEVICE_LOSS.value: 25,
    })
    suspicious_threshold: int = 20
    flagged_threshold: int = 40
    max_idle_seconds: int = 300
    session_max_age_seconds: int = 24 * 60 * 60
    # counts above these become "error" severity
    allowances: Dict[str, int] = field(default_factory=lambda: {
        ViolationType.TAB_SWITCH.value: 3,
        ViolationType.FULLSCREEN_EXIT.value: 2,
    })

    @classmethod
    def from_env(cls) -> "ProctoringPolicy":
        base = cls()
        weights = {
            t.value: _env_int(f"PROCTOR_WEIGHT_{t.name}", base.weights[t.value]) for t in ViolationType
        }
        allowances = {
            ViolationType.TAB_SWITCH.value: _env_int(
                "PROCTOR_TAB_SWITCH_ALLOWANCE", base.allowances[ViolationType.TAB_SWITCH.value]),
            ViolationType.FULLSCREEN_EXIT.value: _env_int(
                "PROCTOR_FULLSCREEN_EXIT_ALLOWANCE", base.allowances[ViolationType.FULLSCREEN_EXIT.value]),
        }
        policy = cls(
            weights=weights,
            suspicious_threshold=_env_int("PROCTOR_SUSPICIOUS_THRESHOLD", base.suspicious_threshold),
            flagged_threshold=_env_int("PROCTOR_FLAGGED_THRESHOLD", base.flagged_threshold),
            max_idle_seconds=_env_int("PROCTOR_MAX_IDLE_SECONDS", base.max_idle_seconds),
            session_max_age_seconds=_env_int("PROCTOR_SESSION_MAX_AGE_SECONDS", base.session_max_age_seconds),
            allowances=allowances,
        )
        if policy.suspicious_threshold > policy.flagged_threshold:
            print("[proctor] PROCTOR_SUSPICIOUS_THRESHOLD above flagged threshold; clamping", flush=True)
            policy = cls(
                weights=policy.weights,
                suspicious_threshold=policy.flagged_threshold,
                flagged_threshold=policy.flagged_threshold,
                max_idle_seconds=policy.max_idle_seconds,
                session_max_age_seconds=policy.session_max_age_seconds,
                allowances=policy.allowances,
            )
        return policy

    def weight(self, vtype: ViolationType) -> int:
        return max(0, int(self.weights.get(vtype.value, 0)))


@dataclass(frozen=True)
class Violation:
    type: ViolationType
    timestamp: datetime
    weight: int
    severity: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "weight": self.weight,
            "severity": self.severity,
            "message": self.message,
        }


_MESSAGES = {
    ViolationType.TAB_SWITCH: "Tab switching detected",
    ViolationType.FULLSCREEN_EXIT: "Full screen mode exited",
    ViolationType.DEVICE_LOSS: "Proctoring device lost",
}


def classify(policy: ProctoringPolicy, vtype: ViolationType, now: datetime,
             count: int, idle_seconds: Optional[float] = None, device: Optional[str] = None) -> Violation:
    """
    Build the violation record for one signal. `count` is how many violations of
    this type the session holds including this one.
    """
    allowance = policy.allowances.get(vtype.value)
    if vtype is ViolationType.DEVICE_LOSS:
        severity = SEVERITY_ERROR
    elif allowance is not None and count > allowance:
        severity = SEVERITY_ERROR
    else:
        severity = SEVERITY_WARNING

    if vtype is ViolationType.INACTIVITY:
        message = f"No activity detected for {int((idle_seconds or 0) // 60)} minutes"
    elif vtype is ViolationType.DEVICE_LOSS and device:
        message = f"Proctoring device lost: {device}"
    else:
        message = _MESSAGES[vtype]
    return Violation(type=vtype, timestamp=now, weight=policy.weight(vtype), severity=severity, message=message)


def status_for_score(policy: ProctoringPolicy, score: int) -> SessionStatus:
    if score >= policy.flagged_threshold:
        return SessionStatus.FLAGGED
    if score >= policy.suspicious_threshold:
        return SessionStatus.SUSPICIOUS
    return SessionStatus.ACTIVE


def promote(current: SessionStatus, candidate: SessionStatus) -> SessionStatus:
    """Never demote; ended is terminal."""
    if current is SessionStatus.ENDED:
        return current
    return candidate if _STATUS_ORDER[candidate] > _STATUS_ORDER[current] else current


def risk_level(violations: Iterable[Violation]) -> str:
    vs = list(violations)
    if any(v.severity == SEVERITY_ERROR for v in vs):
        return "high"
    if len(vs) > 5:
        return "medium"
    if vs:
        return "low"
    return "none"


def recommendations(policy: ProctoringPolicy, violations: Iterable[Violation]) -> List[str]:
    vs = list(violations)
    out: List[str] = []
    tab_switches = sum(1 for v in vs if v.type is ViolationType.TAB_SWITCH)
    if tab_switches > policy.allowances.get(ViolationType.TAB_SWITCH.value, 0):
        out.append("Review exam session for potential cheating due to excessive tab switching")
    if sum(1 for v in vs if v.type is ViolationType.INACTIVITY) > 2:
        out.append("Consider implementing additional monitoring for this user")
    if any(v.type is ViolationType.DEVICE_LOSS for v in vs):
        out.append("Verify webcam and microphone were present for the whole session")
    if not vs:
        out.append("No violations detected - session appears clean")
    return out

# proctoring_tracker.py
# -----------------------------------------------------------------------------
# Process-local registry of live proctoring sessions keyed by (exam_id, user_id).
# - The tracker is an ordinary object: main.py builds one, tests build their own
# - One lock per session key for mutations; the registry dict has its own small
#   lock held only for get/insert/remove/snapshot
# - Best effort: every public operation logs and swallows its own failures so
#   proctoring can never break an exam attempt
# - Sessions are lost on restart; only the audit side-writes survive
# -----------------------------------------------------------------------------
import functools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from keyed_locks import KeyedLocks
from violation_classifier import (
    ProctoringPolicy, SessionStatus, Violation, ViolationType,
    classify, promote, recommendations, risk_level, status_for_score,
)

SessionKey = Tuple[str, str]
DEVICES = ("webcam", "microphone")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_key(exam_id: Any, user_id: Any) -> SessionKey:
    return (str(exam_id), str(user_id))


@dataclass
class ProctoringSession:
    exam_id: str
    user_id: str
    started_at: datetime
    last_activity: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    suspicion_score: int = 0
    violations: List[Violation] = field(default_factory=list)
    devices: Dict[str, bool] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    ended_at: Optional[datetime] = None

    def count(self, vtype: ViolationType) -> int:
        return sum(1 for v in self.violations if v.type is vtype)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        ref = self.ended_at or now or utcnow()
        return {
            "exam_id": self.exam_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "is_active": self.status is not SessionStatus.ENDED,
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "suspicion_score": self.suspicion_score,
            "tab_switch_count": self.count(ViolationType.TAB_SWITCH),
            "fullscreen_exit_count": self.count(ViolationType.FULLSCREEN_EXIT),
            "devices": dict(self.devices),
            "violations": [v.to_dict() for v in self.violations],
            "time_elapsed": (ref - self.started_at).total_seconds(),
        }


def best_effort(default: Any = None):
    """Log and swallow any failure of a tracker operation."""
    def wrap(fn):
        @functools.wraps(fn)
        def inner(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except Exception as e:
                print(f"[proctor] {fn.__name__} failed: {e}", flush=True)
                return default() if callable(default) else default
        return inner
    return wrap


class ProctoringTracker:
    """
    policy: ProctoringPolicy (weights / thresholds / idle limit / cleanup age)
    clock : () -> aware datetime
    alert : called with a dict when a session becomes flagged
    audit : called as audit(kind, exam_id, user_id, payload) for violations and
            ended-session summaries
    locks : KeyedLocks shared with callers that need per-session serialization
    """

    def __init__(self, policy: Optional[ProctoringPolicy] = None,
                 clock: Callable[[], datetime] = utcnow,
                 alert: Optional[Callable[[Dict[str, Any]], Any]] = None,
                 audit: Optional[Callable[[str, str, str, Dict[str, Any]], Any]] = None,
                 locks: Optional[KeyedLocks] = None):
        self.policy = policy or ProctoringPolicy()
        self.clock = clock
        self.alert = alert
        self.audit = audit
        self._sessions: Dict[SessionKey, ProctoringSession] = {}
        self._registry_lock = threading.Lock()
        self._locks = locks if locks is not None else KeyedLocks()

    # ---- internals -----------------------------------------------------------
    def _get(self, key: SessionKey) -> Optional[ProctoringSession]:
        with self._registry_lock:
            return self._sessions.get(key)

    def _snapshot(self) -> List[Tuple[SessionKey, ProctoringSession]]:
        with self._registry_lock:
            return list(self._sessions.items())

    def _side_write(self, kind: str, session: ProctoringSession, payload: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit(kind, session.exam_id, session.user_id, payload)
        except Exception as e:
            print(f"[proctor] audit write failed ({kind} exam={session.exam_id} user={session.user_id}): {e}",
                  flush=True)

    def _raise_alert(self, session: ProctoringSession, violation: Violation) -> None:
        print(f"[proctor] FLAGGED exam={session.exam_id} user={session.user_id} "
              f"score={session.suspicion_score} last={violation.type.value}", flush=True)
        if self.alert is None:
            return
        try:
            self.alert({
                "exam_id": session.exam_id,
                "user_id": session.user_id,
                "type": f"session_flagged:{violation.type.value}",
                "message": f"Suspicion score {session.suspicion_score} reached the review threshold",
                "suspicion_score": session.suspicion_score,
                "timestamp": violation.timestamp.isoformat(),
                "severity": "error",
            })
        except Exception as e:
            print(f"[proctor] alert delivery failed: {e}", flush=True)

    def _record(self, exam_id: Any, user_id: Any, vtype: ViolationType,
                idle_limit: Optional[float] = None, device: Optional[str] = None) -> Optional[Violation]:
        key = session_key(exam_id, user_id)
        with self._locks.hold(key):
            session = self._get(key)
            if session is None or session.status is SessionStatus.ENDED:
                return None
            now = self.clock()
            idle = None
            if vtype is ViolationType.INACTIVITY:
                idle = (now - session.last_activity).total_seconds()
                if idle <= idle_limit:
                    return None
            elif vtype is ViolationType.DEVICE_LOSS and device:
                session.devices[device] = False

            violation = classify(self.policy, vtype, now, session.count(vtype) + 1,
                                 idle_seconds=idle, device=device)
            session.violations.append(violation)
            session.suspicion_score += violation.weight
            before = session.status
            session.status = promote(before, status_for_score(self.policy, session.suspicion_score))

        print(f"[proctor] {vtype.value} exam={session.exam_id} user={session.user_id} "
              f"severity={violation.severity} score={session.suspicion_score} status={session.status.value}")
        self._side_write("violation", session, violation.to_dict())
        if session.status is SessionStatus.FLAGGED and before is not SessionStatus.FLAGGED:
            self._raise_alert(session, violation)
        return violation

    def _summary(self, session: ProctoringSession) -> Dict[str, Any]:
        vs = session.violations
        return {
            "total_violations": len(vs),
            "critical_violations": sum(1 for v in vs if v.severity == "error"),
            "tab_switches": session.count(ViolationType.TAB_SWITCH),
            "fullscreen_exits": session.count(ViolationType.FULLSCREEN_EXIT),
            "inactivity_warnings": session.count(ViolationType.INACTIVITY),
            "device_losses": session.count(ViolationType.DEVICE_LOSS),
            "suspicion_score": session.suspicion_score,
            "final_status": session.status.value,
            "risk_level": risk_level(vs),
            "recommendations": recommendations(self.policy, vs),
        }

    # ---- session lifecycle ---------------------------------------------------
    @best_effort()
    def start_session(self, exam_id: Any, user_id: Any, config: Optional[Dict[str, Any]] = None) -> ProctoringSession:
        """Create the session; an existing live session is returned unchanged."""
        key = session_key(exam_id, user_id)
        config = dict(config or {})
        with self._locks.hold(key):
            with self._registry_lock:
                existing = self._sessions.get(key)
                if existing is not None:
                    return existing
                now = self.clock()
                devices = config.pop("devices", None) or {}
                session = ProctoringSession(
                    exam_id=key[0], user_id=key[1], started_at=now, last_activity=now,
                    devices={d: bool(devices.get(d, False)) for d in DEVICES},
                    config=config,
                )
                self._sessions[key] = session
        print(f"[proctor] session started exam={key[0]} user={key[1]}")
        return session

    @best_effort(default=False)
    def update_activity(self, exam_id: Any, user_id: Any) -> bool:
        key = session_key(exam_id, user_id)
        with self._locks.hold(key):
            session = self._get(key)
            if session is None:
                return False
            session.last_activity = self.clock()
        return True

    @best_effort()
    def record_tab_switch(self, exam_id: Any, user_id: Any) -> Optional[Violation]:
        return self._record(exam_id, user_id, ViolationType.TAB_SWITCH)

    @best_effort()
    def record_fullscreen_exit(self, exam_id: Any, user_id: Any) -> Optional[Violation]:
        return self._record(exam_id, user_id, ViolationType.FULLSCREEN_EXIT)

    @best_effort()
    def record_device_loss(self, exam_id: Any, user_id: Any, device: str = "webcam") -> Optional[Violation]:
        device = (device or "webcam").strip().lower()
        if device not in DEVICES:
            print(f"[proctor] unknown device {device!r}; recording as device loss anyway")
        return self._record(exam_id, user_id, ViolationType.DEVICE_LOSS, device=device)

    @best_effort()
    def check_inactivity(self, exam_id: Any, user_id: Any,
                         max_idle_seconds: Optional[float] = None) -> Optional[Violation]:
        limit = self.policy.max_idle_seconds if max_idle_seconds is None else float(max_idle_seconds)
        return self._record(exam_id, user_id, ViolationType.INACTIVITY, idle_limit=limit)

    @best_effort()
    def get_session_status(self, exam_id: Any, user_id: Any) -> Optional[Dict[str, Any]]:
        key = session_key(exam_id, user_id)
        with self._locks.hold(key):
            session = self._get(key)
            if session is None:
                return None
            return session.to_dict(self.clock())

    @best_effort()
    def get_violations(self, exam_id: Any, user_id: Any) -> Optional[List[Dict[str, Any]]]:
        key = session_key(exam_id, user_id)
        with self._locks.hold(key):
            session = self._get(key)
            if session is None:
                return None
            return [v.to_dict() for v in session.violations]

    @best_effort()
    def end_session(self, exam_id: Any, user_id: Any) -> Optional[Dict[str, Any]]:
        """Remove the session and return its summary; None when there is nothing to end."""
        key = session_key(exam_id, user_id)
        with self._locks.hold(key):
            with self._registry_lock:
                session = self._sessions.pop(key, None)
            if session is None:
                return None
            session.ended_at = self.clock()
            session.status = SessionStatus.ENDED
            result = {
                "session_id": f"{key[0]}-{key[1]}",
                "exam_id": key[0],
                "user_id": key[1],
                "started_at": session.started_at.isoformat(),
                "ended_at": session.ended_at.isoformat(),
                "duration": (session.ended_at - session.started_at).total_seconds(),
                "suspicion_score": session.suspicion_score,
                "violations": [v.to_dict() for v in session.violations],
                "summary": self._summary(session),
            }
        print(f"[proctor] session ended exam={key[0]} user={key[1]} "
              f"violations={len(session.violations)} score={session.suspicion_score}")
        self._side_write("session_end", session, result)
        return result

    # ---- registry-wide -------------------------------------------------------
    @best_effort(default=0)
    def cleanup_old_sessions(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop sessions idle longer than max_age_seconds. Locks one entry at a time."""
        max_age = self.policy.session_max_age_seconds if max_age_seconds is None else float(max_age_seconds)
        removed = 0
        for key, _ in self._snapshot():
            with self._locks.hold(key):
                session = self._get(key)
                if session is None:
                    continue
                if (self.clock() - session.last_activity).total_seconds() <= max_age:
                    continue
                with self._registry_lock:
                    self._sessions.pop(key, None)
            removed += 1
            print(f"[proctor] cleaned up stale session exam={key[0]} user={key[1]}")
        return removed

    @best_effort(default=list)
    def active_sessions(self) -> List[Dict[str, Any]]:
        out = []
        for key, session in self._snapshot():
            with self._locks.hold(key):
                out.append({
                    "session_key": f"{key[0]}-{key[1]}",
                    "exam_id": session.exam_id,
                    "user_id": session.user_id,
                    "status": session.status.value,
                    "started_at": session.started_at.isoformat(),
                    "last_activity": session.last_activity.isoformat(),
                    "suspicion_score": session.suspicion_score,
                    "violations": len(session.violations),
                })
        return out

    @best_effort(default=dict)
    def violation_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "total_sessions": 0,
            "active_sessions": 0,
            "flagged_sessions": 0,
            "total_violations": 0,
            "violations_by_type": {},
            "risk_levels": {"none": 0, "low": 0, "medium": 0, "high": 0},
        }
        for key, session in self._snapshot():
            with self._locks.hold(key):
                vs = list(session.violations)
                status = session.status
            stats["total_sessions"] += 1
            if status is not SessionStatus.ENDED:
                stats["active_sessions"] += 1
            if status is SessionStatus.FLAGGED:
                stats["flagged_sessions"] += 1
            stats["total_violations"] += len(vs)
            for v in vs:
                stats["violations_by_type"][v.type.value] = stats["violations_by_type"].get(v.type.value, 0) + 1
            stats["risk_levels"][risk_level(vs)] += 1
        return stats

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

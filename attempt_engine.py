# attempt_engine.py
# -----------------------------------------------------------------------------
# Exam attempt lifecycle: started -> in_progress -> submitted (terminal).
# - One transition function for every event; manual completion and timer
#   expiry (TimeExpired) share the same scoring path
# - Answers are graded eagerly on submission; the final total is always
#   re-summed from the per-answer scores at completion
# - Mutations are serialized per attempt id (KeyedLocks) and the store adds a
#   revision check on save
# - Ranking runs after the attempt is persisted as submitted; a ranking failure
#   leaves rank/percentile empty and never undoes the submission
# -----------------------------------------------------------------------------
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from errors import (
    AccessDenied, AttemptAlreadyActive, AttemptAlreadySubmitted, AttemptLimitReached,
    AttemptNotActive, AttemptNotFound, EvaluatorError, ExamNotFound, ExamNotOpen,
    QuestionNotInAttempt,
)
from keyed_locks import KeyedLocks
from question_evaluator import (
    Answer, ANSWER_CLASS, Number, Question, QuestionType,
    answer_to_json, calculate_score, is_correct, parse_answer, question_from_row,
)

ANSWER_TYPES = tuple(ANSWER_CLASS.values())


class AttemptStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


ACTIVE_STATUSES = (AttemptStatus.STARTED, AttemptStatus.IN_PROGRESS)
TERMINAL_STATUSES = (AttemptStatus.SUBMITTED,)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Nearest integer, halves away from zero for positives (37.5 -> 38)."""
    return int(math.floor(value + 0.5))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ------------------------------- exam input -----------------------------------
@dataclass(frozen=True)
class ExamInfo:
    """Read-only exam metadata handed in by the surrounding application."""
    id: str
    duration_minutes: int
    questions: Tuple[Question, ...] = ()
    title: str = ""
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_attempts: Optional[int] = 1
    is_active: bool = True
    is_public: bool = True

    def is_open(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.starts_at and now < self.starts_at:
            return False
        if self.ends_at and now > self.ends_at:
            return False
        return True


# ------------------------------- attempt model --------------------------------
@dataclass
class AnswerRecord:
    question_id: str
    question_type: str
    section_id: Optional[str] = None
    answer: Optional[Answer] = None
    score: Optional[Number] = None
    is_correct: Optional[bool] = None
    time_spent: float = 0.0
    marked_for_review: bool = False
    visits: int = 0
    last_modified: Optional[datetime] = None

    @property
    def attempted(self) -> bool:
        return self.answer is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_type": self.question_type,
            "section_id": self.section_id,
            "answer": answer_to_json(self.answer),
            "score": self.score,
            "is_correct": self.is_correct,
            "time_spent": self.time_spent,
            "marked_for_review": self.marked_for_review,
            "visits": self.visits,
            "last_modified": _iso(self.last_modified),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnswerRecord":
        return cls(
            question_id=str(d["question_id"]),
            question_type=d["question_type"],
            section_id=d.get("section_id"),
            answer=parse_answer(d["question_type"], d.get("answer")),
            score=d.get("score"),
            is_correct=d.get("is_correct"),
            time_spent=float(d.get("time_spent") or 0.0),
            marked_for_review=bool(d.get("marked_for_review")),
            visits=int(d.get("visits") or 0),
            last_modified=_parse_dt(d.get("last_modified")),
        )


def _question_to_dict(q: Question) -> Dict[str, Any]:
    correct = q.correct_answer
    if isinstance(correct, frozenset):
        correct = sorted(correct)
    return {
        "id": q.id,
        "exam_id": q.exam_id,
        "section_id": q.section_id,
        "number": q.number,
        "question_type": q.question_type,
        "options": list(q.options),
        "correct_answer": correct,
        "marks": q.marks,
        "negative_marks": q.negative_marks,
        "tolerance": q.tolerance,
    }


@dataclass
class ExamAttempt:
    id: str
    exam_id: str
    user_id: str
    started_at: datetime
    duration_seconds: int
    questions: Tuple[Question, ...]
    answers: List[AnswerRecord]
    max_score: Number
    time_remaining: float
    status: AttemptStatus = AttemptStatus.STARTED
    total_score: Number = 0
    percentage: Optional[int] = None
    submitted_at: Optional[datetime] = None
    submitted_via: Optional[str] = None
    rank: Optional[int] = None
    percentile: Optional[int] = None
    sections: List[Dict[str, Any]] = field(default_factory=list)
    analytics: Dict[str, Any] = field(default_factory=dict)
    revision: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_seconds)

    def server_time_remaining(self, now: datetime) -> float:
        return max(0.0, (self.deadline - now).total_seconds())

    def is_expired(self, now: datetime) -> bool:
        return self.is_active and now >= self.deadline

    def record(self, question_id: Any) -> AnswerRecord:
        qid = str(question_id)
        for rec in self.answers:
            if rec.question_id == qid:
                return rec
        raise QuestionNotInAttempt(f"question {qid} is not part of attempt {self.id}", question_id=qid)

    def question(self, question_id: Any) -> Question:
        qid = str(question_id)
        for q in self.questions:
            if q.id == qid:
                return q
        raise QuestionNotInAttempt(f"question {qid} is not part of attempt {self.id}", question_id=qid)

    @property
    def live_score(self) -> Number:
        return sum(rec.score for rec in self.answers if rec.score is not None)

    def summary(self) -> Dict[str, Any]:
        """Attempt view without the question snapshot (no correct answers leak)."""
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "submitted_at": _iso(self.submitted_at),
            "submitted_via": self.submitted_via,
            "time_remaining": int(self.time_remaining),
            "max_score": self.max_score,
            "live_score": self.live_score,
            "total_score": self.total_score if not self.is_active else None,
            "percentage": self.percentage,
            "rank": self.rank,
            "percentile": self.percentile,
            "answers": [rec.to_dict() for rec in self.answers],
            "sections": self.sections,
            "analytics": self.analytics,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data.update({
            "duration_seconds": self.duration_seconds,
            "total_score": self.total_score,
            "questions": [_question_to_dict(q) for q in self.questions],
            "revision": self.revision,
        })
        return data

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExamAttempt":
        return cls(
            id=str(d["id"]),
            exam_id=str(d["exam_id"]),
            user_id=str(d["user_id"]),
            started_at=_parse_dt(d["started_at"]),
            duration_seconds=int(d["duration_seconds"]),
            questions=tuple(question_from_row(q) for q in d.get("questions") or []),
            answers=[AnswerRecord.from_dict(a) for a in d.get("answers") or []],
            max_score=d.get("max_score") or 0,
            time_remaining=float(d.get("time_remaining") or 0.0),
            status=AttemptStatus(d.get("status") or AttemptStatus.STARTED.value),
            total_score=d.get("total_score") or 0,
            percentage=d.get("percentage"),
            submitted_at=_parse_dt(d.get("submitted_at")),
            submitted_via=d.get("submitted_via"),
            rank=d.get("rank"),
            percentile=d.get("percentile"),
            sections=list(d.get("sections") or []),
            analytics=dict(d.get("analytics") or {}),
            revision=int(d.get("revision") or 0),
        )


def new_attempt(exam: ExamInfo, user_id: Any, now: datetime, attempt_id: Optional[str] = None) -> ExamAttempt:
    """Snapshot the exam's questions into a fresh attempt with one empty record per question."""
    questions = tuple(sorted(exam.questions, key=lambda q: (q.number, q.id)))
    duration = int(exam.duration_minutes) * 60
    return ExamAttempt(
        id=attempt_id or uuid.uuid4().hex,
        exam_id=str(exam.id),
        user_id=str(user_id),
        started_at=now,
        duration_seconds=duration,
        questions=questions,
        answers=[AnswerRecord(question_id=q.id, question_type=q.question_type, section_id=q.section_id)
                 for q in questions],
        max_score=sum(q.marks for q in questions),
        time_remaining=float(duration),
    )


# ------------------------------- events ---------------------------------------
@dataclass(frozen=True)
class AnswerSubmitted:
    question_id: str
    answer: Optional[Answer]
    time_spent: float = 0.0


@dataclass(frozen=True)
class ReviewMarked:
    question_id: str
    marked: bool = True


@dataclass(frozen=True)
class TimeSynced:
    time_remaining: float


@dataclass(frozen=True)
class CompleteRequested:
    pass


@dataclass(frozen=True)
class TimeExpired:
    pass


AttemptEvent = Union[AnswerSubmitted, ReviewMarked, TimeSynced, CompleteRequested, TimeExpired]


def section_rollups(attempt: ExamAttempt) -> List[Dict[str, Any]]:
    marks = {q.id: q.marks for q in attempt.questions}
    order: List[str] = []
    rows: Dict[str, Dict[str, Any]] = {}
    for rec in attempt.answers:
        key = rec.section_id or "default"
        if key not in rows:
            order.append(key)
            rows[key] = {"section_id": key, "question_count": 0, "attempted": 0, "correct": 0,
                         "score": 0, "max_score": 0, "time_spent": 0.0}
        row = rows[key]
        row["question_count"] += 1
        row["max_score"] += marks.get(rec.question_id, 0)
        row["time_spent"] += rec.time_spent
        if rec.attempted:
            row["attempted"] += 1
        if rec.is_correct:
            row["correct"] += 1
        if rec.score is not None:
            row["score"] += rec.score
    return [rows[k] for k in order]


def attempt_analytics(attempt: ExamAttempt) -> Dict[str, Any]:
    by_type = {t.value: {"attempted": 0, "correct": 0, "score": 0} for t in QuestionType}
    attempted = correct = marked = 0
    time_on_attempted = 0.0
    for rec in attempt.answers:
        if rec.marked_for_review:
            marked += 1
        if not rec.attempted:
            continue
        attempted += 1
        time_on_attempted += rec.time_spent
        bucket = by_type.setdefault(rec.question_type, {"attempted": 0, "correct": 0, "score": 0})
        bucket["attempted"] += 1
        bucket["score"] += rec.score or 0
        if rec.is_correct:
            correct += 1
            bucket["correct"] += 1
    total = len(attempt.answers)
    return {
        "total_questions": total,
        "attempted": attempted,
        "correct": correct,
        "incorrect": attempted - correct,
        "unattempted": total - attempted,
        "marked_for_review": marked,
        "accuracy": round(100.0 * correct / attempted, 2) if attempted else 0.0,
        "average_time_per_question": round(time_on_attempted / attempted, 2) if attempted else 0.0,
        "by_type": by_type,
    }


def _grade(attempt: ExamAttempt, rec: AnswerRecord) -> None:
    q = attempt.question(rec.question_id)
    rec.score = calculate_score(q, rec.answer)
    rec.is_correct = is_correct(q, rec.answer)


def _complete(attempt: ExamAttempt, now: datetime, via: str) -> ExamAttempt:
    for rec in attempt.answers:
        if rec.score is None or rec.is_correct is None:
            _grade(attempt, rec)
    total = sum(rec.score for rec in attempt.answers)
    attempt.total_score = total
    attempt.percentage = round_half_up(total / attempt.max_score * 100) if attempt.max_score else 0
    attempt.time_remaining = min(attempt.time_remaining, attempt.server_time_remaining(now))
    attempt.sections = section_rollups(attempt)
    attempt.analytics = attempt_analytics(attempt)
    attempt.submitted_at = now
    attempt.submitted_via = via
    attempt.status = AttemptStatus.SUBMITTED
    return attempt


def transition(attempt: ExamAttempt, event: AttemptEvent, now: datetime) -> ExamAttempt:
    """Apply one event to the attempt in place. Raises instead of ignoring bad events."""
    if isinstance(event, (CompleteRequested, TimeExpired)):
        if not attempt.is_active:
            raise AttemptAlreadySubmitted(f"attempt {attempt.id} is already submitted")
        return _complete(attempt, now, "auto" if isinstance(event, TimeExpired) else "manual")

    if not attempt.is_active:
        raise AttemptNotActive(f"attempt {attempt.id} is {attempt.status.value}; no further changes accepted")

    if isinstance(event, AnswerSubmitted):
        rec = attempt.record(event.question_id)
        if attempt.status is AttemptStatus.STARTED:
            attempt.status = AttemptStatus.IN_PROGRESS
        rec.answer = event.answer
        _grade(attempt, rec)
        rec.time_spent += max(0.0, float(event.time_spent or 0.0))
        rec.visits += 1
        rec.last_modified = now
        attempt.time_remaining = attempt.server_time_remaining(now)
        return attempt

    if isinstance(event, ReviewMarked):
        rec = attempt.record(event.question_id)
        rec.marked_for_review = bool(event.marked)
        rec.last_modified = now
        return attempt

    if isinstance(event, TimeSynced):
        remaining = max(0.0, min(float(event.time_remaining), attempt.server_time_remaining(now)))
        attempt.time_remaining = remaining
        if remaining <= 0:
            return _complete(attempt, now, "auto")
        return attempt

    raise TypeError(f"unknown attempt event {event!r}")


# ------------------------------- engine ---------------------------------------
class AttemptEngine:
    """
    Attempt service used by the HTTP layer.

    store     : attempt persistence (see attempt_store.PgAttemptStore)
    load_exam : exam_id -> ExamInfo | None
    can_access: (ExamInfo, user_id) -> bool; enrollment/invite checks live outside
    ranking   : RankingAggregator (optional)
    clock     : () -> aware datetime
    """

    def __init__(self, store, load_exam: Callable[[Any], Optional[ExamInfo]],
                 can_access: Optional[Callable[[ExamInfo, Any], bool]] = None,
                 ranking=None, clock: Callable[[], datetime] = utcnow,
                 locks: Optional[KeyedLocks] = None):
        self.store = store
        self.load_exam = load_exam
        self.can_access = can_access
        self.ranking = ranking
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLocks()

    # ---- helpers -------------------------------------------------------------
    def _load(self, attempt_id: Any, user_id: Any = None) -> ExamAttempt:
        attempt = self.store.get(str(attempt_id))
        if attempt is None:
            raise AttemptNotFound(f"attempt {attempt_id} not found")
        if user_id is not None and attempt.user_id != str(user_id):
            raise AccessDenied("attempt belongs to another user")
        return attempt

    def _apply(self, attempt: ExamAttempt, event: AttemptEvent, now: datetime) -> ExamAttempt:
        try:
            transition(attempt, event, now)
        except EvaluatorError as e:
            print(f"[exam] EVALUATOR FAULT attempt={attempt.id} {e.code}: {e.message}", flush=True)
            raise
        self.store.save(attempt)
        return attempt

    def _expire_locked(self, attempt: ExamAttempt, now: datetime) -> bool:
        if not attempt.is_expired(now):
            return False
        self._apply(attempt, TimeExpired(), now)
        print(f"[exam] attempt {attempt.id} auto-submitted at deadline "
              f"(score {attempt.total_score}/{attempt.max_score})")
        return True

    def _rank(self, attempt: ExamAttempt) -> ExamAttempt:
        if self.ranking is None:
            return attempt
        try:
            result = self.ranking.compute_rank_and_percentile(attempt.exam_id, attempt.id)
            self.store.update_rank(attempt.id, result.rank, result.percentile)
            attempt.rank, attempt.percentile = result.rank, result.percentile
        except Exception as e:
            print(f"[rank] ranking failed for attempt {attempt.id} (left empty): {e}", flush=True)
        return attempt

    # ---- operations ----------------------------------------------------------
    def start_attempt(self, exam_id: Any, user_id: Any) -> ExamAttempt:
        exam = self.load_exam(exam_id)
        if exam is None:
            raise ExamNotFound(f"exam {exam_id} not found")
        now = self.clock()
        if not exam.is_open(now):
            raise ExamNotOpen(f"exam {exam.id} is not open for attempts", starts_at=_iso(exam.starts_at),
                              ends_at=_iso(exam.ends_at))
        if self.can_access is not None and not self.can_access(exam, user_id):
            raise AccessDenied(f"user is not allowed to take exam {exam.id}")

        expired: List[ExamAttempt] = []
        with self.locks.hold(("start", str(exam.id), str(user_id))):
            existing = self.store.list_user_attempts(exam.id, user_id)
            for a in existing:
                if a.is_active and a.is_expired(now):
                    with self.locks.hold(a.id):
                        fresh = self._load(a.id)
                        if self._expire_locked(fresh, now):
                            expired.append(fresh)
                    a.status = fresh.status
            active = next((a for a in existing if a.is_active), None)
            if active is not None:
                raise AttemptAlreadyActive(f"an attempt for exam {exam.id} is already in progress",
                                           attempt_id=active.id)
            if exam.max_attempts is not None and len(existing) >= int(exam.max_attempts):
                raise AttemptLimitReached(f"attempt limit reached ({exam.max_attempts})",
                                          max_attempts=exam.max_attempts)
            attempt = new_attempt(exam, user_id, now)
            self.store.insert(attempt)

        for a in expired:
            self._rank(a)
        print(f"[exam] attempt {attempt.id} started exam={exam.id} user={user_id} "
              f"questions={len(attempt.answers)} max_score={attempt.max_score}")
        return attempt

    def submit_answer(self, attempt_id: Any, user_id: Any, question_id: Any,
                      answer: Any, time_spent: float = 0.0) -> AnswerRecord:
        """`answer` is an Answer variant or the raw decoded JSON value."""
        expired = False
        with self.locks.hold(str(attempt_id)):
            attempt = self._load(attempt_id, user_id)
            now = self.clock()
            if self._expire_locked(attempt, now):
                expired = True
            else:
                if not attempt.is_active:
                    raise AttemptNotActive(f"attempt {attempt.id} is {attempt.status.value}")
                rec = attempt.record(question_id)
                parsed = answer if isinstance(answer, ANSWER_TYPES) else parse_answer(rec.question_type, answer)
                self._apply(attempt, AnswerSubmitted(rec.question_id, parsed, time_spent), now)
                return rec
        self._rank(attempt)
        raise AttemptNotActive(f"time is up for attempt {attempt.id}; it was submitted automatically",
                               expired=expired)

    def mark_for_review(self, attempt_id: Any, user_id: Any, question_id: Any, marked: bool = True) -> AnswerRecord:
        with self.locks.hold(str(attempt_id)):
            attempt = self._load(attempt_id, user_id)
            now = self.clock()
            if not self._expire_locked(attempt, now):
                self._apply(attempt, ReviewMarked(str(question_id), bool(marked)), now)
                return attempt.record(question_id)
        self._rank(attempt)
        raise AttemptNotActive(f"time is up for attempt {attempt.id}; it was submitted automatically",
                               expired=True)

    def sync_time(self, attempt_id: Any, user_id: Any, time_remaining: float) -> ExamAttempt:
        if not math.isfinite(float(time_remaining)):
            raise ValueError("time_remaining must be a finite number")
        with self.locks.hold(str(attempt_id)):
            attempt = self._load(attempt_id, user_id)
            now = self.clock()
            if not self._expire_locked(attempt, now):
                self._apply(attempt, TimeSynced(float(time_remaining)), now)
        if attempt.status is AttemptStatus.SUBMITTED and attempt.rank is None:
            self._rank(attempt)
        return attempt

    def complete_attempt(self, attempt_id: Any, user_id: Any = None) -> ExamAttempt:
        with self.locks.hold(str(attempt_id)):
            attempt = self._load(attempt_id, user_id)
            now = self.clock()
            event = TimeExpired() if attempt.is_expired(now) else CompleteRequested()
            self._apply(attempt, event, now)
        print(f"[exam] attempt {attempt.id} submitted ({attempt.submitted_via}) "
              f"score {attempt.total_score}/{attempt.max_score} = {attempt.percentage}%")
        return self._rank(attempt)

    def get_attempt(self, attempt_id: Any, user_id: Any = None) -> ExamAttempt:
        with self.locks.hold(str(attempt_id)):
            attempt = self._load(attempt_id, user_id)
            expired = self._expire_locked(attempt, self.clock())
        if expired:
            self._rank(attempt)
        return attempt

    def list_attempts(self, exam_id: Any, user_id: Any = None) -> List[ExamAttempt]:
        """The caller's attempts at an exam, oldest first; every attempt when `user_id` is None."""
        if user_id is None:
            return self.store.list_exam_attempts(exam_id)
        return self.store.list_user_attempts(exam_id, user_id)

    def expire_overdue(self) -> int:
        """Auto-submit every active attempt whose deadline has passed."""
        closed = 0
        for stale in self.store.list_overdue():
            with self.locks.hold(stale.id):
                attempt = self.store.get(stale.id)
                if attempt is None or not self._expire_locked(attempt, self.clock()):
                    continue
            closed += 1
            self._rank(attempt)
        if closed:
            print(f"[exam] expire_overdue closed {closed} attempt(s)")
        return closed

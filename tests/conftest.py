import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempt_engine import ACTIVE_STATUSES, AttemptEngine, ExamAttempt, ExamInfo  # noqa: E402
from errors import AttemptAlreadyActive, StaleAttempt  # noqa: E402
from keyed_locks import KeyedLocks  # noqa: E402
from question_evaluator import Question  # noqa: E402
from ranking import RankingAggregator  # noqa: E402


T0 = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InMemoryAttemptStore:
    """Same contract as PgAttemptStore; rows are kept as serialized dicts."""

    def __init__(self):
        self.rows = {}
        self.rank_updates = []

    def _load(self, row):
        return ExamAttempt.from_dict(copy.deepcopy(row))

    def get(self, attempt_id):
        row = self.rows.get(str(attempt_id))
        return self._load(row) if row else None

    def insert(self, attempt):
        active = [s.value for s in ACTIVE_STATUSES]
        for row in self.rows.values():
            if row["exam_id"] == attempt.exam_id and row["user_id"] == attempt.user_id and row["status"] in active:
                raise AttemptAlreadyActive("duplicate active attempt")
        attempt.revision = 0
        self.rows[attempt.id] = attempt.to_dict()

    def save(self, attempt):
        row = self.rows.get(attempt.id)
        if row is None or row["revision"] != attempt.revision:
            raise StaleAttempt(f"attempt {attempt.id} changed")
        attempt.revision += 1
        data = attempt.to_dict()
        data["rank"], data["percentile"] = row.get("rank"), row.get("percentile")
        self.rows[attempt.id] = data

    def list_user_attempts(self, exam_id, user_id):
        return [self._load(r) for r in self.rows.values()
                if r["exam_id"] == str(exam_id) and r["user_id"] == str(user_id)]

    def list_exam_attempts(self, exam_id):
        return [self._load(r) for r in self.rows.values() if r["exam_id"] == str(exam_id)]

    def list_submitted(self, exam_id):
        return [self._load(r) for r in self.rows.values()
                if r["exam_id"] == str(exam_id) and r["status"] == "submitted"]

    def list_overdue(self):
        active = [s.value for s in ACTIVE_STATUSES]
        return [self._load(r) for r in self.rows.values() if r["status"] in active]

    def update_rank(self, attempt_id, rank, percentile):
        self.rank_updates.append((attempt_id, rank, percentile))
        row = self.rows[attempt_id]
        row["rank"], row["percentile"] = rank, percentile


def make_two_question_exam(**overrides):
    q1 = Question(id="q1", exam_id="exam-1", question_type="MCQ_Single", correct_answer="B",
                  options=("A", "B", "C", "D"), marks=4, negative_marks=1, number=1, section_id="physics")
    q2 = Question(id="q2", exam_id="exam-1", question_type="Integer", correct_answer=42,
                  marks=4, negative_marks=1, number=2, section_id="maths")
    fields = dict(id="exam-1", title="Mock Test", duration_minutes=30, questions=(q1, q2), max_attempts=1)
    fields.update(overrides)
    return ExamInfo(**fields)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryAttemptStore()


@pytest.fixture
def exams():
    return {"exam-1": make_two_question_exam()}


@pytest.fixture
def engine(store, exams, clock):
    return AttemptEngine(
        store=store,
        load_exam=exams.get,
        can_access=lambda exam, user_id: True,
        ranking=RankingAggregator(store),
        clock=clock,
        locks=KeyedLocks(),
    )

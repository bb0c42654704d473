import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest
from psycopg.errors import UniqueViolation


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempt_engine import new_attempt  # noqa: E402
from attempt_store import PgAttemptStore  # noqa: E402
from conftest import T0, make_two_question_exam  # noqa: E402
from errors import AttemptAlreadyActive, StaleAttempt  # noqa: E402


class FakeDB:
    def __init__(self):
        self.executed = []
        self.returning = []
        self.one = {}
        self.all = {}
        self.raise_on_insert = None

    def _match(self, table, sql):
        for key, value in table.items():
            if key in sql:
                return value
        return None

    def fetch_one(self, sql, params=()):
        return self._match(self.one, sql)

    def fetch_all(self, sql, params=()):
        return self._match(self.all, sql) or []

    def execute(self, sql, params=()):
        if self.raise_on_insert and "INSERT INTO public.exam_attempts" in sql:
            raise self.raise_on_insert
        self.executed.append((sql, params))

    def execute_returning(self, sql, params=()):
        self.executed.append((sql, params))
        return self.returning.pop(0) if self.returning else []

    def deps(self):
        return {"fetch_one": self.fetch_one, "fetch_all": self.fetch_all,
                "execute": self.execute, "execute_returning": self.execute_returning}


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def pg(db):
    return PgAttemptStore(db.deps())


def test_schema_has_partial_unique_index(pg, db):
    pg.ensure_schema()
    pg.ensure_schema()
    sql = "\n".join(s for s, _ in db.executed)
    assert "CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_one_active" in sql
    assert "WHERE status IN ('started','in_progress')" in sql
    assert sql.count("CREATE TABLE IF NOT EXISTS public.exam_attempts") == 1


def test_unique_violation_on_insert_means_attempt_already_active(pg, db):
    db.raise_on_insert = UniqueViolation("duplicate key value violates unique constraint")
    with pytest.raises(AttemptAlreadyActive):
        pg.insert(new_attempt(make_two_question_exam(), "u1", T0))


def test_save_bumps_revision_or_reports_stale(pg, db):
    attempt = new_attempt(make_two_question_exam(), "u1", T0)
    db.returning = [[{"revision": 1}], []]
    pg.save(attempt)
    assert attempt.revision == 1
    sql, params = db.executed[-1]
    assert "WHERE id = %s AND revision = %s" in sql
    assert params[-2:] == (attempt.id, 0)
    assert json.loads(params[3])["exam_id"] == "exam-1"

    with pytest.raises(StaleAttempt):
        pg.save(attempt)


def test_get_overlays_rank_columns(pg, db):
    attempt = new_attempt(make_two_question_exam(), "u1", T0, attempt_id="a1")
    db.one["FROM public.exam_attempts"] = {
        "payload": attempt.to_dict(), "revision": 3, "rank": 2, "percentile": 67,
    }
    loaded = pg.get("a1")
    assert (loaded.revision, loaded.rank, loaded.percentile) == (3, 2, 67)
    assert [q.id for q in loaded.questions] == ["q1", "q2"]


def test_load_exam_builds_questions_from_rows(pg, db):
    db.one["FROM public.exams"] = {
        "id": "exam-9", "title": "Finals", "duration_minutes": 45, "starts_at": None, "ends_at": None,
        "max_attempts": 2, "is_active": True, "is_public": False,
    }
    db.all["FROM public.questions"] = [
        {"id": "x", "exam_id": "exam-9", "section_id": None, "number": 1, "question_type": "Numerical",
         "options": None, "correct_answer": 9.81, "marks": Decimal("2"), "negative_marks": Decimal("0.5"),
         "tolerance": 0.01},
    ]
    exam = pg.load_exam("exam-9")
    assert exam.duration_minutes == 45 and exam.max_attempts == 2 and exam.is_public is False
    q = exam.questions[0]
    assert q.marks == 2 and q.negative_marks == 0.5 and q.tolerance == 0.01


def test_load_exam_missing(pg):
    assert pg.load_exam("nope") is None


def test_can_access_follows_latest_enrollment(pg, db):
    public = make_two_question_exam()
    private = make_two_question_exam(is_public=False)
    assert pg.can_access(public, "u1") is True
    assert pg.can_access(private, "u1") is False
    db.one["FROM public.exam_enrollments"] = {"status": " Accepted "}
    assert pg.can_access(private, "u1") is True
    db.one["FROM public.exam_enrollments"] = {"status": "pending"}
    assert pg.can_access(private, "u1") is False


def test_proctoring_event_insert(pg, db):
    pg.record_proctoring_event("violation", "e1", "u1", {"type": "tab_switch"})
    sql, params = db.executed[-1]
    assert "INSERT INTO public.proctoring_events" in sql
    assert params[:3] == ("e1", "u1", "violation")
    assert json.loads(params[3]) == {"type": "tab_switch"}


def test_list_exam_attempts_covers_every_user(pg, db):
    rows = [{"payload": new_attempt(make_two_question_exam(), uid, T0, attempt_id=f"a-{uid}").to_dict(),
             "revision": 0, "rank": None, "percentile": None} for uid in ("u1", "u2")]
    db.all["ORDER BY started_at, id"] = rows
    listed = pg.list_exam_attempts("exam-1")
    assert [a.user_id for a in listed] == ["u1", "u2"]

# attempt_store.py
# -----------------------------------------------------------------------------
# Postgres persistence for the attempt engine (psycopg 3 via main.py helpers).
# - public.exam_attempts: one row per attempt, full attempt as jsonb payload plus
#   the columns needed for filtering/ranking; `revision` for optimistic writes
# - Partial unique index keeps at most one started/in_progress attempt per
#   (exam_id, user_id) even across processes
# - rank/percentile live in their own columns so re-ranking never rewrites the
#   attempt payload
# - Exams/questions/enrollments are read-only inputs owned by authoring tools
# -----------------------------------------------------------------------------
import json
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors as pg_errors

from attempt_engine import ExamAttempt, ExamInfo
from errors import AttemptAlreadyActive, StaleAttempt
from question_evaluator import question_from_row

ACTIVE_SQL = "('started','in_progress')"


class PgAttemptStore:
    """
    Required deps: fetch_one, fetch_all, execute, execute_returning
    (same helpers main.py hands to every blueprint).
    """

    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]
        self._schema_ready = False

    # ---- schema --------------------------------------------------------------
    def ensure_schema(self):
        if self._schema_ready:
            return
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.exams (
              id               TEXT PRIMARY KEY,
              title            TEXT NOT NULL DEFAULT '',
              duration_minutes INTEGER NOT NULL,
              starts_at        TIMESTAMPTZ,
              ends_at          TIMESTAMPTZ,
              max_attempts     INTEGER DEFAULT 1,
              is_active        BOOLEAN NOT NULL DEFAULT TRUE,
              is_public        BOOLEAN NOT NULL DEFAULT TRUE,
              created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """, ())
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.questions (
              id             TEXT PRIMARY KEY,
              exam_id        TEXT NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
              section_id     TEXT,
              number         INTEGER NOT NULL DEFAULT 0,
              question_type  TEXT NOT NULL,
              options        JSONB,
              correct_answer JSONB NOT NULL,
              marks          NUMERIC NOT NULL DEFAULT 1,
              negative_marks NUMERIC NOT NULL DEFAULT 0,
              tolerance      DOUBLE PRECISION
            );
        """, ())
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.exam_enrollments (
              id         BIGSERIAL PRIMARY KEY,
              exam_id    TEXT NOT NULL,
              user_id    TEXT NOT NULL,
              status     TEXT NOT NULL DEFAULT 'pending',
              created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """, ())
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.exam_attempts (
              id           TEXT PRIMARY KEY,
              exam_id      TEXT NOT NULL,
              user_id      TEXT NOT NULL,
              status       TEXT NOT NULL,
              total_score  NUMERIC,
              started_at   TIMESTAMPTZ NOT NULL,
              deadline_at  TIMESTAMPTZ NOT NULL,
              submitted_at TIMESTAMPTZ,
              rank         INTEGER,
              percentile   INTEGER,
              payload      JSONB NOT NULL,
              revision     INTEGER NOT NULL DEFAULT 0,
              updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """, ())
        self.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_one_active
                ON public.exam_attempts (exam_id, user_id)
             WHERE status IN {ACTIVE_SQL};
        """, ())
        self.execute("""
            CREATE INDEX IF NOT EXISTS exam_attempts_exam_status
                ON public.exam_attempts (exam_id, status);
        """, ())
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.proctoring_events (
              id         BIGSERIAL PRIMARY KEY,
              exam_id    TEXT NOT NULL,
              user_id    TEXT NOT NULL,
              kind       TEXT NOT NULL,
              payload    JSONB,
              created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """, ())
        self._schema_ready = True
        print("[DB] exam schema ready")

    # ---- row <-> attempt -----------------------------------------------------
    @staticmethod
    def _from_row(row: Optional[Dict[str, Any]]) -> Optional[ExamAttempt]:
        if not row:
            return None
        payload = row.get("payload") or {}
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        payload = dict(payload)
        payload["revision"] = row.get("revision") or 0
        payload["rank"] = row.get("rank")
        payload["percentile"] = row.get("percentile")
        return ExamAttempt.from_dict(payload)

    @staticmethod
    def _columns(attempt: ExamAttempt) -> Dict[str, Any]:
        return {
            "status": attempt.status.value,
            "total_score": attempt.total_score,
            "submitted_at": attempt.submitted_at,
            "payload": json.dumps(attempt.to_dict(), ensure_ascii=False),
        }

    _SELECT = "SELECT payload, revision, rank, percentile FROM public.exam_attempts"

    # ---- attempts ------------------------------------------------------------
    def get(self, attempt_id: str) -> Optional[ExamAttempt]:
        return self._from_row(self.fetch_one(self._SELECT + " WHERE id = %s;", (attempt_id,)))

    def insert(self, attempt: ExamAttempt) -> None:
        cols = self._columns(attempt)
        try:
            self.execute("""
                INSERT INTO public.exam_attempts
                    (id, exam_id, user_id, status, total_score, started_at, deadline_at, payload, revision)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, 0);
            """, (attempt.id, attempt.exam_id, attempt.user_id, cols["status"], cols["total_score"],
                  attempt.started_at, attempt.deadline, cols["payload"]))
        except pg_errors.UniqueViolation:
            raise AttemptAlreadyActive(f"an attempt for exam {attempt.exam_id} is already in progress")
        attempt.revision = 0

    def save(self, attempt: ExamAttempt) -> None:
        """Write the attempt back; fails with StaleAttempt if someone saved in between."""
        cols = self._columns(attempt)
        rows = self.execute_returning("""
            UPDATE public.exam_attempts
               SET status = %s,
                   total_score = %s,
                   submitted_at = %s,
                   payload = %s::jsonb,
                   revision = revision + 1,
                   updated_at = now()
             WHERE id = %s AND revision = %s
            RETURNING revision;
        """, (cols["status"], cols["total_score"], cols["submitted_at"], cols["payload"],
              attempt.id, attempt.revision))
        if not rows:
            raise StaleAttempt(f"attempt {attempt.id} was modified concurrently; reload and retry")
        attempt.revision = int(rows[0]["revision"])

    def list_user_attempts(self, exam_id: Any, user_id: Any) -> List[ExamAttempt]:
        rows = self.fetch_all(self._SELECT + """
             WHERE exam_id = %s AND user_id = %s
             ORDER BY started_at;
        """, (str(exam_id), str(user_id)))
        return [self._from_row(r) for r in rows or []]

    def list_exam_attempts(self, exam_id: Any) -> List[ExamAttempt]:
        rows = self.fetch_all(self._SELECT + """
             WHERE exam_id = %s
             ORDER BY started_at, id;
        """, (str(exam_id),))
        return [self._from_row(r) for r in rows or []]

    def list_submitted(self, exam_id: Any) -> List[ExamAttempt]:
        rows = self.fetch_all(self._SELECT + """
             WHERE exam_id = %s AND status = 'submitted'
             ORDER BY total_score DESC, submitted_at ASC, id ASC;
        """, (str(exam_id),))
        return [self._from_row(r) for r in rows or []]

    def list_overdue(self) -> List[ExamAttempt]:
        rows = self.fetch_all(self._SELECT + f"""
             WHERE status IN {ACTIVE_SQL} AND deadline_at <= now()
             ORDER BY deadline_at;
        """, ())
        return [self._from_row(r) for r in rows or []]

    def update_rank(self, attempt_id: str, rank: int, percentile: int) -> None:
        self.execute("""
            UPDATE public.exam_attempts
               SET rank = %s, percentile = %s
             WHERE id = %s AND status = 'submitted';
        """, (rank, percentile, attempt_id))

    # ---- exam inputs ---------------------------------------------------------
    def load_exam(self, exam_id: Any) -> Optional[ExamInfo]:
        row = self.fetch_one("""
            SELECT id, title, duration_minutes, starts_at, ends_at, max_attempts, is_active, is_public
              FROM public.exams
             WHERE id = %s;
        """, (str(exam_id),))
        if not row:
            return None
        qrows = self.fetch_all("""
            SELECT id, exam_id, section_id, number, question_type, options,
                   correct_answer, marks, negative_marks, tolerance
              FROM public.questions
             WHERE exam_id = %s
             ORDER BY number, id;
        """, (str(exam_id),))
        return ExamInfo(
            id=str(row["id"]),
            title=row.get("title") or "",
            duration_minutes=int(row["duration_minutes"]),
            questions=tuple(question_from_row(q) for q in qrows or []),
            starts_at=row.get("starts_at"),
            ends_at=row.get("ends_at"),
            max_attempts=row.get("max_attempts"),
            is_active=bool(row.get("is_active", True)),
            is_public=bool(row.get("is_public", True)),
        )

    def can_access(self, exam: ExamInfo, user_id: Any) -> bool:
        """Public exams are open to everyone; otherwise the latest enrollment must be 'accepted'."""
        if exam.is_public:
            return True
        r = self.fetch_one("""
            SELECT status
              FROM public.exam_enrollments
             WHERE exam_id = %s AND user_id = %s
             ORDER BY created_at DESC
             LIMIT 1;
        """, (str(exam.id), str(user_id)))
        status = (r or {}).get("status")
        return isinstance(status, str) and status.strip().lower() == "accepted"

    # ---- proctoring audit ----------------------------------------------------
    def record_proctoring_event(self, kind: str, exam_id: str, user_id: str, payload: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.proctoring_events (exam_id, user_id, kind, payload)
            VALUES (%s, %s, %s, %s::jsonb);
        """, (exam_id, user_id, kind, json.dumps(payload, ensure_ascii=False)))

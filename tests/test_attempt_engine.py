import sys
from datetime import timedelta
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempt_engine import (  # noqa: E402
    AttemptEngine, AttemptStatus, CompleteRequested, TimeExpired, new_attempt, round_half_up, transition,
)
from conftest import T0, make_two_question_exam  # noqa: E402
from errors import (  # noqa: E402
    AccessDenied, AttemptAlreadyActive, AttemptAlreadySubmitted, AttemptLimitReached, AttemptNotActive,
    ExamNotFound, ExamNotOpen, QuestionNotInAttempt, StaleAttempt, UndecodableAnswer,
)
from question_evaluator import ChoiceAnswer, IntegerAnswer  # noqa: E402


def test_end_to_end_two_question_exam(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    assert attempt.status is AttemptStatus.STARTED
    assert attempt.max_score == 8
    assert attempt.time_remaining == 30 * 60
    assert [r.answer for r in attempt.answers] == [None, None]

    r1 = engine.submit_answer(attempt.id, "u1", "q1", "B", time_spent=12)
    r2 = engine.submit_answer(attempt.id, "u1", "q2", 41, time_spent=20)
    assert (r1.score, r1.is_correct) == (4, True)
    assert (r2.score, r2.is_correct) == (-1, False)

    done = engine.complete_attempt(attempt.id, "u1")
    assert done.total_score == 3
    assert done.max_score == 8
    assert done.percentage == 38
    assert done.submitted_via == "manual"
    assert done.rank == 1 and done.percentile == 100


def test_total_is_resummed_from_answer_records(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q2", 42)
    done = engine.complete_attempt(attempt.id, "u1")
    stored = store.get(attempt.id)
    assert sum(r.score for r in stored.answers) == stored.total_score == done.total_score == 4
    skipped = stored.record("q1")
    assert skipped.answer is None and skipped.score == 0 and skipped.is_correct is False


def test_first_answer_moves_to_in_progress(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q1", "A")
    assert store.get(attempt.id).status is AttemptStatus.IN_PROGRESS


def test_resubmitting_an_answer_replaces_it_and_accumulates_time(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q1", "A", time_spent=5)
    rec = engine.submit_answer(attempt.id, "u1", "q1", ChoiceAnswer("B"), time_spent=7)
    assert rec.answer == ChoiceAnswer("B")
    assert rec.score == 4
    assert rec.time_spent == 12
    assert rec.visits == 2


def test_second_active_attempt_is_rejected(engine):
    first = engine.start_attempt("exam-1", "u1")
    with pytest.raises(AttemptAlreadyActive) as exc:
        engine.start_attempt("exam-1", "u1")
    assert exc.value.details["attempt_id"] == first.id
    assert [a.id for a in engine.list_attempts("exam-1", "u1")] == [first.id]
    assert engine.list_attempts("exam-1", "u2") == []


def test_attempt_limit_counts_submitted_attempts(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.complete_attempt(attempt.id, "u1")
    with pytest.raises(AttemptLimitReached):
        engine.start_attempt("exam-1", "u1")


def test_unlimited_attempts_when_max_is_none(engine, exams):
    exams["exam-1"] = make_two_question_exam(max_attempts=None)
    for _ in range(3):
        a = engine.start_attempt("exam-1", "u1")
        engine.complete_attempt(a.id, "u1")


def test_start_checks_window_access_and_existence(store, exams, clock):
    exams["later"] = make_two_question_exam(id="later", starts_at=T0 + timedelta(hours=1))
    exams["closed"] = make_two_question_exam(id="closed", is_active=False)
    eng = AttemptEngine(store, exams.get, can_access=lambda exam, uid: uid != "outsider", clock=clock)
    with pytest.raises(ExamNotOpen):
        eng.start_attempt("later", "u1")
    with pytest.raises(ExamNotOpen):
        eng.start_attempt("closed", "u1")
    with pytest.raises(ExamNotFound):
        eng.start_attempt("missing", "u1")
    with pytest.raises(AccessDenied):
        eng.start_attempt("exam-1", "outsider")


def test_complete_twice_fails_without_rescoring(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q1", "B")
    engine.complete_attempt(attempt.id, "u1")
    updates = len(store.rank_updates)
    with pytest.raises(AttemptAlreadySubmitted):
        engine.complete_attempt(attempt.id, "u1")
    assert len(store.rank_updates) == updates
    assert store.get(attempt.id).total_score == 4


def test_no_changes_after_submission(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.complete_attempt(attempt.id, "u1")
    with pytest.raises(AttemptNotActive):
        engine.submit_answer(attempt.id, "u1", "q1", "B")
    with pytest.raises(AttemptNotActive):
        engine.mark_for_review(attempt.id, "u1", "q1", True)


def test_unknown_question_is_rejected(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    with pytest.raises(QuestionNotInAttempt):
        engine.submit_answer(attempt.id, "u1", "q999", "B")


def test_malformed_raw_answer_is_rejected(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    with pytest.raises(UndecodableAnswer):
        engine.submit_answer(attempt.id, "u1", "q2", "forty-two")
    assert store.get(attempt.id).record("q2").answer is None


def test_other_users_cannot_touch_attempt(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    with pytest.raises(AccessDenied):
        engine.submit_answer(attempt.id, "intruder", "q1", "B")
    with pytest.raises(AccessDenied):
        engine.get_attempt(attempt.id, "intruder")


def test_mark_for_review_toggles(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    assert engine.mark_for_review(attempt.id, "u1", "q2", True).marked_for_review is True
    assert engine.mark_for_review(attempt.id, "u1", "q2", False).marked_for_review is False
    engine.mark_for_review(attempt.id, "u1", "q1")
    done = engine.complete_attempt(attempt.id, "u1")
    assert done.analytics["marked_for_review"] == 1


def test_deadline_auto_submits_on_next_mutation(engine, store, clock):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q1", "B")
    clock.advance(30 * 60 + 1)
    with pytest.raises(AttemptNotActive):
        engine.submit_answer(attempt.id, "u1", "q2", 42)
    closed = store.get(attempt.id)
    assert closed.status is AttemptStatus.SUBMITTED
    assert closed.submitted_via == "auto"
    assert closed.total_score == 4
    assert closed.rank == 1


def test_client_time_sync_clamps_and_expires(engine, clock):
    attempt = engine.start_attempt("exam-1", "u1")
    clock.advance(600)
    synced = engine.sync_time(attempt.id, "u1", 99999)
    assert synced.time_remaining == 1200
    with pytest.raises(ValueError):
        engine.sync_time(attempt.id, "u1", float("nan"))
    assert engine.get_attempt(attempt.id, "u1").status is AttemptStatus.STARTED
    synced = engine.sync_time(attempt.id, "u1", 300)
    assert synced.time_remaining == 300
    done = engine.sync_time(attempt.id, "u1", 0)
    assert done.status is AttemptStatus.SUBMITTED
    assert done.submitted_via == "auto"


def test_expire_overdue_sweeps_only_past_deadline(engine, store, clock, exams):
    exams["exam-2"] = make_two_question_exam(id="exam-2", duration_minutes=60)
    short = engine.start_attempt("exam-1", "u1")
    long = engine.start_attempt("exam-2", "u1")
    clock.advance(31 * 60)
    assert engine.expire_overdue() == 1
    assert store.get(short.id).status is AttemptStatus.SUBMITTED
    assert store.get(long.id).is_active
    assert engine.expire_overdue() == 0


def test_expired_active_attempt_is_closed_before_new_start(engine, exams, store, clock):
    exams["exam-1"] = make_two_question_exam(max_attempts=2)
    first = engine.start_attempt("exam-1", "u1")
    clock.advance(31 * 60)
    second = engine.start_attempt("exam-1", "u1")
    assert store.get(first.id).submitted_via == "auto"
    assert second.is_active


def test_ranking_failure_does_not_block_submission(store, exams, clock):
    class BrokenRanking:
        def compute_rank_and_percentile(self, exam_id, attempt_id):
            raise RuntimeError("datastore unavailable")

    eng = AttemptEngine(store, exams.get, ranking=BrokenRanking(), clock=clock)
    attempt = eng.start_attempt("exam-1", "u1")
    done = eng.complete_attempt(attempt.id, "u1")
    assert done.status is AttemptStatus.SUBMITTED
    assert done.rank is None and done.percentile is None
    assert store.get(attempt.id).status is AttemptStatus.SUBMITTED


def test_stale_revision_is_refused(engine, store):
    attempt = engine.start_attempt("exam-1", "u1")
    stale = store.get(attempt.id)
    engine.submit_answer(attempt.id, "u1", "q1", "B")
    stale.record("q1").marked_for_review = True
    with pytest.raises(StaleAttempt):
        store.save(stale)


def test_manual_and_timer_completion_share_scoring(exams):
    exam = exams["exam-1"]
    results = []
    for event in (CompleteRequested(), TimeExpired()):
        a = new_attempt(exam, "u1", T0, attempt_id="a")
        a.record("q1").answer = ChoiceAnswer("B")
        a.record("q2").answer = IntegerAnswer(0)
        transition(a, event, T0 + timedelta(minutes=5))
        results.append((a.total_score, a.percentage, [r.score for r in a.answers]))
    assert results[0] == results[1] == (3, 38, [4, -1])


def test_completion_rollups(engine):
    attempt = engine.start_attempt("exam-1", "u1")
    engine.submit_answer(attempt.id, "u1", "q1", "B", time_spent=30)
    done = engine.complete_attempt(attempt.id, "u1")
    sections = {s["section_id"]: s for s in done.sections}
    assert sections["physics"]["score"] == 4 and sections["physics"]["attempted"] == 1
    assert sections["maths"]["attempted"] == 0 and sections["maths"]["max_score"] == 4
    assert done.analytics["attempted"] == 1
    assert done.analytics["unattempted"] == 1
    assert done.analytics["accuracy"] == 100.0
    assert done.analytics["by_type"]["MCQ_Single"]["correct"] == 1


def test_round_half_up():
    assert round_half_up(37.5) == 38
    assert round_half_up(62.5) == 63
    assert round_half_up(12.49) == 12

# errors.py
# -----------------------------------------------------------------------------
# Error kinds raised by the attempt engine and the evaluator.
# Each kind carries a stable code and the HTTP status the blueprints answer with.
# Proctoring never raises these: violations are data, not errors.
# -----------------------------------------------------------------------------
from typing import Any, Dict, Optional


class ExamError(Exception):
    code = "exam_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        if self.retryable:
            out["retryable"] = True
        return out


# ---- attempt-start failures --------------------------------------------------
class ExamNotFound(ExamError):
    code = "exam_not_found"
    http_status = 404


class ExamNotOpen(ExamError):
    code = "exam_not_open"
    http_status = 409


class AccessDenied(ExamError):
    code = "access_denied"
    http_status = 403


class AttemptLimitReached(ExamError):
    code = "attempt_limit_reached"
    http_status = 403


class AttemptAlreadyActive(ExamError):
    code = "attempt_already_active"
    http_status = 409


# ---- mutation-time failures --------------------------------------------------
class AttemptNotFound(ExamError):
    code = "attempt_not_found"
    http_status = 404


class AttemptNotActive(ExamError):
    code = "attempt_not_active"
    http_status = 409


class AttemptAlreadySubmitted(AttemptNotActive):
    code = "attempt_already_submitted"


class QuestionNotInAttempt(ExamError):
    code = "question_not_in_attempt"
    http_status = 400


class StaleAttempt(ExamError):
    """Another writer saved the attempt first (revision mismatch)."""
    code = "stale_attempt"
    http_status = 409
    retryable = True


# ---- evaluator / data-integrity faults ---------------------------------------
class EvaluatorError(ExamError):
    http_status = 500


class InvalidQuestionType(EvaluatorError):
    code = "invalid_question_type"


class MalformedAnswer(EvaluatorError):
    code = "malformed_answer"


class InvalidQuestion(EvaluatorError):
    code = "invalid_question"


class UndecodableAnswer(MalformedAnswer):
    """Client sent an answer whose shape does not fit the question type."""
    http_status = 400


def error_payload(exc: ExamError, status: Optional[int] = None):
    """(body, status) tuple for a Flask view."""
    return exc.to_dict(), int(status or exc.http_status)

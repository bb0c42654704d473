# question_evaluator.py
# -----------------------------------------------------------------------------
# Scoring for the five supported question types.
# - Pure functions, no state; shared by the attempt engine and bulk validation
# - Answers are a small tagged union, decoded once at the boundary (parse_answer)
# - Unattempted (None) always scores 0; negative marks only on attempted-and-wrong
# - MCQ_Multiple is all-or-nothing: exact set equality or it is wrong
# -----------------------------------------------------------------------------
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from errors import InvalidQuestion, InvalidQuestionType, MalformedAnswer, UndecodableAnswer


class QuestionType(str, Enum):
    MCQ_SINGLE = "MCQ_Single"
    MCQ_MULTIPLE = "MCQ_Multiple"
    TRUE_FALSE = "TrueFalse"
    INTEGER = "Integer"
    NUMERICAL = "Numerical"


OPTION_TYPES = (QuestionType.MCQ_SINGLE, QuestionType.MCQ_MULTIPLE, QuestionType.TRUE_FALSE)
MCQ_TYPES = (QuestionType.MCQ_SINGLE, QuestionType.MCQ_MULTIPLE)

Number = Union[int, float]
CorrectAnswer = Union[str, FrozenSet[str], bool, int, float]


def question_type_of(value: Any) -> QuestionType:
    if isinstance(value, QuestionType):
        return value
    try:
        return QuestionType(str(value))
    except ValueError:
        raise InvalidQuestionType(f"unsupported question type {value!r}", question_type=str(value))


# ------------------------------- answers --------------------------------------
@dataclass(frozen=True)
class ChoiceAnswer:
    option: str

    def to_json(self) -> Any:
        return self.option


@dataclass(frozen=True)
class MultiChoiceAnswer:
    options: FrozenSet[str]

    def to_json(self) -> Any:
        return sorted(self.options)


@dataclass(frozen=True)
class BooleanAnswer:
    value: bool

    def to_json(self) -> Any:
        return self.value


@dataclass(frozen=True)
class IntegerAnswer:
    value: int

    def to_json(self) -> Any:
        return self.value


@dataclass(frozen=True)
class NumericAnswer:
    value: float

    def to_json(self) -> Any:
        return self.value


Answer = Union[ChoiceAnswer, MultiChoiceAnswer, BooleanAnswer, IntegerAnswer, NumericAnswer]

ANSWER_CLASS = {
    QuestionType.MCQ_SINGLE: ChoiceAnswer,
    QuestionType.MCQ_MULTIPLE: MultiChoiceAnswer,
    QuestionType.TRUE_FALSE: BooleanAnswer,
    QuestionType.INTEGER: IntegerAnswer,
    QuestionType.NUMERICAL: NumericAnswer,
}


def _is_plain_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_answer(question_type: Any, raw: Any) -> Optional[Answer]:
    """
    Decode a JSON value into the answer variant for this question type.
    None, "" and an empty selection decode to None (unattempted).
    Raises UndecodableAnswer (a MalformedAnswer) when the shape does not fit the type.
    """
    qtype = question_type_of(question_type)
    if raw is None:
        return None

    if qtype is QuestionType.MCQ_SINGLE:
        if not isinstance(raw, str):
            raise UndecodableAnswer(f"{qtype.value} expects a single option string", got=type(raw).__name__)
        return ChoiceAnswer(raw) if raw.strip() else None

    if qtype is QuestionType.MCQ_MULTIPLE:
        if isinstance(raw, (str, bytes)) or not isinstance(raw, (list, tuple, set, frozenset)):
            raise UndecodableAnswer(f"{qtype.value} expects a list of option strings", got=type(raw).__name__)
        if not all(isinstance(x, str) for x in raw):
            raise UndecodableAnswer(f"{qtype.value} options must be strings")
        opts = frozenset(x for x in raw if x.strip())
        return MultiChoiceAnswer(opts) if opts else None

    if qtype is QuestionType.TRUE_FALSE:
        if not isinstance(raw, bool):
            raise UndecodableAnswer(f"{qtype.value} expects a boolean", got=type(raw).__name__)
        return BooleanAnswer(raw)

    if qtype is QuestionType.INTEGER:
        if not _is_plain_int(raw):
            raise UndecodableAnswer(f"{qtype.value} expects an integer", got=type(raw).__name__)
        return IntegerAnswer(raw)

    # Numerical
    if not (_is_plain_int(raw) or isinstance(raw, float)):
        raise UndecodableAnswer(f"{qtype.value} expects a finite number", got=type(raw).__name__)
    try:
        value = float(raw)
    except OverflowError:
        raise UndecodableAnswer(f"{qtype.value} answer is out of range")
    if not math.isfinite(value):
        raise UndecodableAnswer(f"{qtype.value} expects a finite number", got=type(raw).__name__)
    return NumericAnswer(value)


def answer_to_json(answer: Optional[Answer]) -> Any:
    return None if answer is None else answer.to_json()


# ------------------------------- questions ------------------------------------
@dataclass(frozen=True)
class Question:
    id: str
    exam_id: str
    question_type: str
    correct_answer: CorrectAnswer
    marks: Number = 1
    negative_marks: Number = 0
    options: Tuple[str, ...] = field(default_factory=tuple)
    section_id: Optional[str] = None
    number: int = 0
    tolerance: Optional[float] = None


def validate_question(q: Question) -> List[str]:
    """Authoring invariants. Empty list means the question is publishable."""
    errors: List[str] = []
    try:
        qtype = question_type_of(q.question_type)
    except InvalidQuestionType as e:
        return [e.message]

    if qtype in MCQ_TYPES and len(q.options) < 2:
        errors.append(f"{qtype.value} must have at least 2 options")
    if qtype is QuestionType.MCQ_SINGLE:
        if not isinstance(q.correct_answer, str) or q.correct_answer not in q.options:
            errors.append("MCQ_Single correct answer must be one of the options")
    elif qtype is QuestionType.MCQ_MULTIPLE:
        ca = q.correct_answer
        if not isinstance(ca, frozenset) or not ca:
            errors.append("MCQ_Multiple must have at least one correct option")
        elif not ca.issubset(set(q.options)):
            errors.append("MCQ_Multiple correct answers must be among the options")
    elif qtype is QuestionType.TRUE_FALSE:
        if not isinstance(q.correct_answer, bool):
            errors.append("TrueFalse correct answer must be boolean")
    elif qtype is QuestionType.INTEGER:
        if not _is_plain_int(q.correct_answer):
            errors.append("Integer correct answer must be an integer")
    elif qtype is QuestionType.NUMERICAL:
        if not (_is_plain_int(q.correct_answer) or isinstance(q.correct_answer, float)):
            errors.append("Numerical correct answer must be a number")

    if q.tolerance is not None:
        if qtype is not QuestionType.NUMERICAL:
            errors.append("tolerance is only allowed on Numerical questions")
        elif q.tolerance < 0:
            errors.append("Numerical tolerance must be non-negative")
    if q.marks < 0:
        errors.append("Marks per question must be non-negative")
    if q.negative_marks < 0:
        errors.append("Negative marks per question must be non-negative")
    return errors


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _num(value: Any, default: Number = 0) -> Number:
    if value is None:
        return default
    if _is_plain_int(value):
        return value
    f = float(value)
    return int(f) if f.is_integer() else f


def question_from_row(row: Dict[str, Any]) -> Question:
    """Build a validated Question from a stored row (dict_row / decoded jsonb)."""
    qtype = question_type_of(row.get("question_type"))
    options = _maybe_json(row.get("options")) or []
    if qtype is QuestionType.TRUE_FALSE and not options:
        options = ["True", "False"]
    correct = row.get("correct_answer")
    if qtype is not QuestionType.MCQ_SINGLE:
        correct = _maybe_json(correct)
    if qtype is QuestionType.MCQ_MULTIPLE and isinstance(correct, (list, tuple, set)):
        correct = frozenset(str(x) for x in correct)
    elif qtype is QuestionType.NUMERICAL and _is_plain_int(correct):
        correct = float(correct)
    tol = row.get("tolerance")

    q = Question(
        id=str(row["id"]),
        exam_id=str(row.get("exam_id") or ""),
        section_id=(str(row["section_id"]) if row.get("section_id") is not None else None),
        number=int(row.get("number") or 0),
        question_type=qtype.value,
        options=tuple(str(o) for o in options),
        correct_answer=correct,
        marks=_num(row.get("marks"), 1),
        negative_marks=_num(row.get("negative_marks"), 0),
        tolerance=(float(tol) if tol is not None else None),
    )
    problems = validate_question(q)
    if problems:
        raise InvalidQuestion(f"question {q.id} is invalid: " + "; ".join(problems), question_id=q.id)
    return q


# ------------------------------- scoring --------------------------------------
def is_correct(question: Question, answer: Optional[Answer]) -> bool:
    qtype = question_type_of(question.question_type)
    if answer is None:
        return False
    expected = ANSWER_CLASS[qtype]
    if not isinstance(answer, expected):
        raise MalformedAnswer(
            f"{qtype.value} question {question.id} got {type(answer).__name__}",
            question_id=question.id,
        )

    if qtype is QuestionType.MCQ_SINGLE:
        return answer.option == question.correct_answer
    if qtype is QuestionType.MCQ_MULTIPLE:
        return answer.options == frozenset(question.correct_answer)
    if qtype is QuestionType.TRUE_FALSE:
        return answer.value is bool(question.correct_answer)
    if qtype is QuestionType.INTEGER:
        return answer.value == question.correct_answer
    tolerance = question.tolerance or 0.0
    return abs(answer.value - float(question.correct_answer)) <= tolerance


def calculate_score(question: Question, answer: Optional[Answer]) -> Number:
    """Full marks, minus negative marks on a wrong attempt, 0 when unattempted."""
    question_type_of(question.question_type)
    if answer is None:
        return 0
    if is_correct(question, answer):
        return question.marks
    return -question.negative_marks if question.negative_marks else 0

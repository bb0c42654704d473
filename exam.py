# exam.py
# -----------------------------------------------------------------------------
# Exam attempt API (JSON only).
# - Start / list / view / answer / review / time-sync / complete for one attempt
# - Leaderboard per exam; admin re-rank and overdue sweep
# - Identity comes from main.py (g.user_id / g.user_role); this module never
#   authenticates on its own
# - Engine errors map to {"ok": false, "error": <code>, "message": ...}
# -----------------------------------------------------------------------------

import math
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g

from errors import ExamError, EvaluatorError, UndecodableAnswer, error_payload


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + api_prefix (e.g. "/exam/api").
    Required deps: engine (AttemptEngine), ranking (RankingAggregator)
    Optional deps: api_prefix (default "/api"), is_admin (callable -> bool)
    """
    api_prefix = deps.get("api_prefix") or "/api"
    url_prefix = (base_path or "").rstrip("/") + api_prefix
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    engine = deps["engine"]
    ranking = deps["ranking"]
    is_admin: Callable[[], bool] = deps.get("is_admin") or (lambda: False)

    LEADERBOARD_DEFAULT = 50
    LEADERBOARD_MAX = 500

    # ------------------------------- helpers ----------------------------------
    def _uid() -> Optional[str]:
        uid = getattr(g, "user_id", None)
        return str(uid) if uid is not None else None

    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _bad_request(msg: str):
        return jsonify({"ok": False, "error": "bad_request", "message": msg}), 400

    def _body() -> Dict[str, Any]:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    def _float_field(data: Dict[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
        raw = data.get(key, default)
        if raw is None or isinstance(raw, bool):
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError, OverflowError):
            raise ValueError(f"{key} must be a number")
        if not math.isfinite(value):
            raise ValueError(f"{key} must be a finite number")
        return value

    @bp.errorhandler(ExamError)
    def _exam_error(e: ExamError):
        if isinstance(e, EvaluatorError) and not isinstance(e, UndecodableAnswer):
            print(f"[exam] {request.method} {request.path} -> {e.code}: {e.message}", flush=True)
        body, status = error_payload(e)
        return jsonify(body), status

    @bp.errorhandler(ValueError)
    def _value_error(e: ValueError):
        return _bad_request(str(e) or "invalid value")

    # ------------------------------- attempts ---------------------------------
    @bp.post("/exams/<exam_id>/attempts")
    def attempt_start(exam_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        attempt = engine.start_attempt(exam_id, uid)
        return jsonify({"ok": True, "attempt": attempt.summary()}), 201

    @bp.get("/exams/<exam_id>/attempts")
    def attempt_list(exam_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        attempts = engine.list_attempts(exam_id, None if is_admin() else uid)
        return jsonify({"ok": True, "exam_id": exam_id, "attempts": [a.summary() for a in attempts]})

    @bp.get("/attempts/<attempt_id>")
    def attempt_view(attempt_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        attempt = engine.get_attempt(attempt_id, None if is_admin() else uid)
        return jsonify({"ok": True, "attempt": attempt.summary()})

    @bp.post("/attempts/<attempt_id>/answers")
    def attempt_answer(attempt_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        data = _body()
        qid = data.get("question_id")
        if qid is None or str(qid).strip() == "":
            return _bad_request("question_id is required")
        time_spent = _float_field(data, "time_spent", 0.0)
        if time_spent < 0:
            return _bad_request("time_spent must be non-negative")
        rec = engine.submit_answer(attempt_id, uid, str(qid), data.get("answer"), time_spent)
        return jsonify({
            "ok": True,
            "question_id": rec.question_id,
            "score": rec.score,
            "is_correct": rec.is_correct,
            "time_spent": rec.time_spent,
            "visits": rec.visits,
        })

    @bp.post("/attempts/<attempt_id>/review")
    def attempt_review(attempt_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        data = _body()
        qid = data.get("question_id")
        if qid is None or str(qid).strip() == "":
            return _bad_request("question_id is required")
        marked = data.get("marked", True)
        if not isinstance(marked, bool):
            return _bad_request("marked must be a boolean")
        rec = engine.mark_for_review(attempt_id, uid, str(qid), marked)
        return jsonify({"ok": True, "question_id": rec.question_id, "marked_for_review": rec.marked_for_review})

    @bp.post("/attempts/<attempt_id>/time")
    def attempt_time(attempt_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        remaining = _float_field(_body(), "time_remaining")
        if remaining is None:
            return _bad_request("time_remaining is required")
        attempt = engine.sync_time(attempt_id, uid, remaining)
        return jsonify({
            "ok": True,
            "status": attempt.status.value,
            "time_remaining": int(attempt.time_remaining),
            "submitted_via": attempt.submitted_via,
        })

    @bp.post("/attempts/<attempt_id>/complete")
    def attempt_complete(attempt_id: str):
        uid = _uid()
        if not uid:
            return _unauthorized()
        attempt = engine.complete_attempt(attempt_id, uid)
        return jsonify({
            "ok": True,
            "attempt_id": attempt.id,
            "total_score": attempt.total_score,
            "max_score": attempt.max_score,
            "percentage": attempt.percentage,
            "rank": attempt.rank,
            "percentile": attempt.percentile,
            "submitted_via": attempt.submitted_via,
            "sections": attempt.sections,
            "analytics": attempt.analytics,
        })

    # ------------------------------- standings --------------------------------
    @bp.get("/exams/<exam_id>/leaderboard")
    def exam_leaderboard(exam_id: str):
        if not _uid():
            return _unauthorized()
        try:
            limit = int(request.args.get("limit") or LEADERBOARD_DEFAULT)
        except ValueError:
            return _bad_request("limit must be an integer")
        limit = max(1, min(limit, LEADERBOARD_MAX))
        return jsonify({"ok": True, "exam_id": exam_id, "leaderboard": ranking.leaderboard(exam_id, limit)})

    # ------------------------------- admin ------------------------------------
    @bp.post("/exams/<exam_id>/rerank")
    def exam_rerank(exam_id: str):
        if not _uid():
            return _unauthorized()
        if not is_admin():
            return jsonify({"ok": False, "error": "forbidden"}), 403
        return jsonify({"ok": True, "exam_id": exam_id, "ranked": ranking.rerank_exam(exam_id)})

    @bp.post("/attempts/expire-overdue")
    def attempts_expire_overdue():
        if not _uid():
            return _unauthorized()
        if not is_admin():
            return jsonify({"ok": False, "error": "forbidden"}), 403
        return jsonify({"ok": True, "closed": engine.expire_overdue()})

    return bp

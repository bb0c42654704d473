# proctor.py
# -----------------------------------------------------------------------------
# Proctoring API. Thin JSON layer over ProctoringTracker.
# - Student endpoints act on the caller's own (exam_id, user_id) session
# - A missing session is not an error: 200 with "recorded": false
# - Admin endpoints: live sessions, statistics, cleanup, per-user violations
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g


def create_proctoring_blueprint(base_path: str, deps: Dict[str, Any], name: str = "proctoring") -> Blueprint:
    """
    Mounted at base_path + api_prefix + "/proctoring".
    Required deps: tracker (ProctoringTracker)
    Optional deps: api_prefix, is_admin
    """
    api_prefix = deps.get("api_prefix") or "/api"
    bp = Blueprint(name, __name__, url_prefix=(base_path or "").rstrip("/") + api_prefix + "/proctoring")

    tracker = deps["tracker"]
    is_admin: Callable[[], bool] = deps.get("is_admin") or (lambda: False)

    # ---- helpers -------------------------------------------------------------
    def _uid() -> Optional[str]:
        uid = getattr(g, "user_id", None)
        return str(uid) if uid is not None else None

    def _exam_id(data: Dict[str, Any]) -> Optional[str]:
        exam_id = data.get("exam_id")
        if exam_id is None or str(exam_id).strip() == "":
            return None
        return str(exam_id).strip()

    def _body() -> Dict[str, Any]:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    def _guard():
        """(exam_id, user_id, None) or (None, None, error_response)."""
        uid = _uid()
        if not uid:
            return None, None, (jsonify({"ok": False, "error": "unauthorized"}), 401)
        data = _body()
        exam_id = _exam_id(data)
        if not exam_id:
            return None, None, (jsonify({"ok": False, "error": "bad_request",
                                         "message": "exam_id is required"}), 400)
        return exam_id, uid, None

    def _violation_response(violation):
        if violation is None:
            return jsonify({"ok": True, "recorded": False, "violation": None})
        return jsonify({"ok": True, "recorded": True, "violation": violation.to_dict()})

    def _admin_only():
        if not _uid():
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        if not is_admin():
            return jsonify({"ok": False, "error": "forbidden"}), 403
        return None

    # ---- student session -----------------------------------------------------
    @bp.post("/session/start")
    def session_start():
        exam_id, uid, err = _guard()
        if err:
            return err
        data = _body()
        config = {
            "devices": {
                "webcam": bool(data.get("webcam")),
                "microphone": bool(data.get("microphone")),
            },
        }
        session = tracker.start_session(exam_id, uid, config)
        if session is None:
            return jsonify({"ok": True, "started": False})
        return jsonify({"ok": True, "started": True, "session": session.to_dict()})

    @bp.post("/session/activity")
    def session_activity():
        exam_id, uid, err = _guard()
        if err:
            return err
        return jsonify({"ok": True, "recorded": bool(tracker.update_activity(exam_id, uid))})

    @bp.post("/session/tab-switch")
    def session_tab_switch():
        exam_id, uid, err = _guard()
        if err:
            return err
        return _violation_response(tracker.record_tab_switch(exam_id, uid))

    @bp.post("/session/fullscreen-exit")
    def session_fullscreen_exit():
        exam_id, uid, err = _guard()
        if err:
            return err
        return _violation_response(tracker.record_fullscreen_exit(exam_id, uid))

    @bp.post("/session/device-loss")
    def session_device_loss():
        exam_id, uid, err = _guard()
        if err:
            return err
        device = str(_body().get("device") or "webcam")
        return _violation_response(tracker.record_device_loss(exam_id, uid, device))

    @bp.post("/session/check-inactivity")
    def session_check_inactivity():
        exam_id, uid, err = _guard()
        if err:
            return err
        return _violation_response(tracker.check_inactivity(exam_id, uid))

    @bp.post("/session/end")
    def session_end():
        exam_id, uid, err = _guard()
        if err:
            return err
        summary = tracker.end_session(exam_id, uid)
        return jsonify({"ok": True, "ended": summary is not None, "session": summary})

    @bp.get("/session/<exam_id>/status")
    def session_status(exam_id: str):
        uid = _uid()
        if not uid:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        status = tracker.get_session_status(exam_id, uid)
        if status is None:
            return jsonify({"ok": False, "error": "session_not_found"}), 404
        return jsonify({"ok": True, "session": status})

    # ---- admin ---------------------------------------------------------------
    @bp.get("/sessions/active")
    def sessions_active():
        err = _admin_only()
        if err:
            return err
        sessions = tracker.active_sessions()
        return jsonify({"ok": True, "count": len(sessions), "sessions": sessions})

    @bp.get("/statistics")
    def statistics():
        err = _admin_only()
        if err:
            return err
        return jsonify({"ok": True, "statistics": tracker.violation_stats()})

    @bp.post("/cleanup")
    def cleanup():
        err = _admin_only()
        if err:
            return err
        max_age = _body().get("max_age_seconds")
        if max_age is not None and (isinstance(max_age, bool) or not isinstance(max_age, (int, float)) or max_age < 0):
            return jsonify({"ok": False, "error": "bad_request",
                            "message": "max_age_seconds must be a non-negative number"}), 400
        return jsonify({"ok": True, "removed": tracker.cleanup_old_sessions(max_age)})

    @bp.get("/session/<exam_id>/<user_id>/violations")
    def session_violations(exam_id: str, user_id: str):
        err = _admin_only()
        if err:
            return err
        violations = tracker.get_violations(exam_id, user_id)
        if violations is None:
            return jsonify({"ok": False, "error": "session_not_found"}), 404
        return jsonify({"ok": True, "exam_id": exam_id, "user_id": user_id, "violations": violations})

    return bp

# exam.py
# -----------------------------------------------------------------------------
# Timed exam attempts (multiple choice): JSON API.
# - start / resume, per-question answer saves, tab-switch reports, submit, result
# - per-course listing of available exams and the student's course grade
# - Attempt state lives on the server; the client only reflects it
# - Countdown expiry is client-driven, with a server-side deadline check
# -----------------------------------------------------------------------------

import os
from typing import Any, Dict

import psycopg
from flask import Blueprint, request, jsonify, g

from attempt_ledger import PgAttemptLedger
from attempts import AttemptEngine, DEFAULT_GRACE_SECONDS
from exam_errors import ExamError
from exam_store import PgExamStore


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/api/exams.
    deps (either form):
      - engine: a ready AttemptEngine
      - exam_store + ledger (+ optional now)
      - fetch_one, fetch_all, transaction  -> PostgreSQL-backed store and ledger
    """
    url_prefix = (base_path or "").rstrip("/") + "/api/exams"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Config --------------------------------------------------------------
    GRACE_SECONDS = int(os.getenv("EXAM_TIME_GRACE_SEC") or DEFAULT_GRACE_SECONDS)

    # ---- Engine --------------------------------------------------------------
    engine: AttemptEngine = deps.get("engine")
    if engine is None:
        exam_store = deps.get("exam_store") or PgExamStore(deps["fetch_one"], deps["fetch_all"])
        ledger = deps.get("ledger") or PgAttemptLedger(deps["fetch_one"], deps["fetch_all"], deps["transaction"])
        engine = AttemptEngine(exam_store, ledger, now=deps.get("now"), grace_seconds=GRACE_SECONDS)
    bp.engine = engine

    # ------------------------------- errors -----------------------------------
    @bp.errorhandler(ExamError)
    def _exam_error(e: ExamError):
        return jsonify({"ok": False, "error": e.code, "message": str(e)}), e.status

    @bp.errorhandler(psycopg.Error)
    def _storage_error(e: psycopg.Error):
        print(f"[exam] storage error on {request.method} {request.path}: {e}")
        return jsonify({"ok": False, "error": "storage_unavailable"}), 503

    @bp.before_request
    def _require_identity():
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    # --------------------------------- routes ---------------------------------
    @bp.get("/course/<course_id>/available")
    def available_exams(course_id: str):
        return jsonify(engine.available_exams(g.user_id, course_id))

    @bp.get("/course/<course_id>/grade")
    def course_grade(course_id: str):
        return jsonify(engine.course_grade(g.user_id, course_id))

    @bp.post("/<exam_id>/start")
    def start_exam(exam_id: str):
        session_id = _body().get("session_id")
        return jsonify(engine.start(g.user_id, exam_id, session_id=session_id or None))

    @bp.get("/attempt/<attempt_id>")
    def attempt_status(attempt_id: str):
        return jsonify(engine.get_attempt(g.user_id, attempt_id))

    @bp.route("/attempt/<attempt_id>/answer", methods=["PUT", "POST"])
    def save_answer(attempt_id: str):
        data = _body()
        question_id = data.get("question_id")
        choice_id = data.get("choice_id")
        if not question_id or not choice_id:
            return jsonify({"ok": False, "error": "bad_request",
                            "message": "question_id and choice_id are required"}), 400
        return jsonify(engine.save_answer(g.user_id, attempt_id, question_id, choice_id))

    @bp.route("/attempt/<attempt_id>/tab-switch", methods=["PUT", "POST"])
    def tab_switch(attempt_id: str):
        return jsonify(engine.record_tab_switch(g.user_id, attempt_id))

    @bp.post("/attempt/<attempt_id>/submit")
    def submit_exam(attempt_id: str):
        return jsonify(engine.submit(g.user_id, attempt_id))

    @bp.get("/attempt/<attempt_id>/result")
    def exam_result(attempt_id: str):
        return jsonify(engine.get_result(g.user_id, attempt_id))

    return bp


__all__ = ["create_exam_blueprint"]

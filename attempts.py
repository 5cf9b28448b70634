# attempts.py
# -----------------------------------------------------------------------------
# Timed exam attempt state machine.
#   start -> IN_PROGRESS -> SUBMITTED | FLAGGED   (both terminal, both scored)
# - The server is authoritative: every call re-checks status, ownership and
#   the time limit against stored state, never the client's view
# - Mutations run inside ledger.locked(attempt_id); only one finalization
#   per attempt can ever commit
# - The grade is computed once, at finalization, and stored; results are
#   served from the stored grade
# -----------------------------------------------------------------------------

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from attempt_ledger import IN_PROGRESS, SUBMITTED, FLAGGED, TERMINAL_STATUSES
from exam_errors import AlreadyCompleted, InvalidState, NotFound
from exam_store import find_choice, find_question, student_view, total_points
from integrity import max_switches_for, register_switch, remaining_switches
from scoring import PASS_PERCENT, grade_attempt, grade_summary, is_passing, percentage_of

DEFAULT_GRACE_SECONDS = 120


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AttemptEngine:
    def __init__(self, exam_store, ledger,
                 now: Optional[Callable[[], datetime]] = None,
                 grace_seconds: int = DEFAULT_GRACE_SECONDS):
        self.exam_store = exam_store
        self.ledger = ledger
        self.now = now or _utcnow
        self.grace = timedelta(seconds=max(0, int(grace_seconds)))

    # ------------------------------- helpers ----------------------------------
    def _exam_for(self, attempt: Dict[str, Any], handle=None) -> Dict[str, Any]:
        # inside a lock the exam is read on the lock's cursor: one pooled connection per call
        cursor = getattr(handle, "cursor", None)
        exam = self.exam_store.get_exam(attempt["exam_id"], cursor=cursor)
        if not exam:
            raise NotFound("exam not found")
        return exam

    @staticmethod
    def _owned(attempt: Optional[Dict[str, Any]], student_id: Any) -> Dict[str, Any]:
        # another student's attempt is reported exactly like a missing one
        if not attempt or str(attempt["student_id"]) != str(student_id):
            raise NotFound("attempt not found")
        return attempt

    @staticmethod
    def _require_in_progress(attempt: Dict[str, Any]):
        if attempt["status"] != IN_PROGRESS:
            raise AlreadyCompleted(f"attempt already {attempt['status'].lower()}")

    @staticmethod
    def deadline_of(attempt: Dict[str, Any], exam: Dict[str, Any]) -> Optional[datetime]:
        minutes = exam.get("time_limit_minutes")
        if not minutes:
            return None
        return attempt["started_at"] + timedelta(minutes=int(minutes))

    def is_expired(self, attempt: Dict[str, Any], exam: Dict[str, Any], now: datetime) -> bool:
        deadline = self.deadline_of(attempt, exam)
        return deadline is not None and now > deadline + self.grace

    def _finalize(self, handle, exam: Dict[str, Any], status: str, now: datetime) -> Dict[str, Any]:
        grade = grade_attempt(exam, handle.attempt["answers"])
        handle.finalize_attempt(status, now, grade)
        print(f"[exam] attempt {handle.attempt['id']} finalized: status={status} "
              f"score={grade['score']}/{grade['total_possible']}")
        return grade

    def _expire(self, attempt_id: str, exam: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
        """Finalize an attempt that outlived its time limit; returns the attempt as stored afterwards."""
        with self.ledger.locked(attempt_id) as handle:
            if handle is None:
                return None
            if handle.attempt["status"] == IN_PROGRESS:
                self._finalize(handle, exam, SUBMITTED, now)
            return handle.attempt

    def attempt_view(self, attempt: Dict[str, Any], exam: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.now()
        max_switches = max_switches_for(exam)
        deadline = self.deadline_of(attempt, exam)
        remaining_seconds = None
        if deadline is not None and attempt["status"] == IN_PROGRESS:
            remaining_seconds = max(0, int((deadline - now).total_seconds()))
        return {
            "id": attempt["id"],
            "exam_id": attempt["exam_id"],
            "session_id": attempt.get("session_id"),
            "attempt_number": attempt.get("attempt_number"),
            "status": attempt["status"],
            "started_at": _iso(attempt.get("started_at")),
            "submitted_at": _iso(attempt.get("submitted_at")),
            "tab_switch_count": attempt.get("tab_switch_count") or 0,
            "max_tab_switches": max_switches,
            "remaining_tab_switches": remaining_switches(attempt.get("tab_switch_count") or 0, max_switches),
            "answers": dict(attempt.get("answers") or {}),
            "time_limit_minutes": exam.get("time_limit_minutes"),
            "deadline": _iso(deadline),
            "remaining_seconds": remaining_seconds,
        }

    # ------------------------------- operations -------------------------------
    def start(self, student_id: Any, exam_id: Any, session_id: Any = None) -> Dict[str, Any]:
        """
        Start, resume, or re-open the result of an attempt.
        - An IN_PROGRESS attempt for this student+exam (any session) is resumed
        - A terminal attempt for this student+exam+session is returned as-is
        - Otherwise a new attempt is created
        """
        exam = self.exam_store.get_exam(exam_id)
        if not exam or not exam.get("is_published"):
            raise NotFound("exam not available")

        now = self.now()
        attempt = (self.ledger.find_active_attempt(student_id, exam["id"])
                   or self.ledger.find_attempt(student_id, exam["id"], session_id))
        created = False
        if attempt is None:
            attempt, created = self.ledger.create_attempt(student_id, exam["id"], session_id, now)

        if attempt["status"] == IN_PROGRESS and self.is_expired(attempt, exam, now):
            attempt = self._expire(attempt["id"], exam, now) or attempt

        earlier_scores = [
            a.get("score") for a in self.ledger.list_attempts(student_id, exam["id"])
            if a["id"] != attempt["id"] and a["status"] in TERMINAL_STATUSES and a.get("score") is not None
        ]
        completed = attempt["status"] in TERMINAL_STATUSES
        return {
            "exam": student_view(exam),
            "attempt": self.attempt_view(attempt, exam, now),
            "attempt_number": attempt.get("attempt_number"),
            "previous_score": max(earlier_scores) if earlier_scores else None,
            "resumed": not created and not completed,
            "completed": completed,
        }

    def save_answer(self, student_id: Any, attempt_id: Any, question_id: Any, choice_id: Any) -> Dict[str, Any]:
        expired = False
        with self.ledger.locked(attempt_id) as handle:
            attempt = self._owned(handle.attempt if handle else None, student_id)
            self._require_in_progress(attempt)
            exam = self._exam_for(attempt, handle)
            now = self.now()
            if self.is_expired(attempt, exam, now):
                self._finalize(handle, exam, SUBMITTED, now)
                expired = True
            else:
                question = find_question(exam, question_id)
                if not question:
                    raise NotFound("question not found in this exam")
                choice = find_choice(question, choice_id)
                if not choice:
                    raise NotFound("choice not found for this question")
                handle.upsert_answer(question["id"], choice["id"], now)
        if expired:
            raise InvalidState("time limit expired; attempt submitted", code="time_expired")
        return {"ok": True}

    def record_tab_switch(self, student_id: Any, attempt_id: Any) -> Dict[str, Any]:
        expired = False
        with self.ledger.locked(attempt_id) as handle:
            attempt = self._owned(handle.attempt if handle else None, student_id)
            self._require_in_progress(attempt)
            exam = self._exam_for(attempt, handle)
            now = self.now()
            max_switches = max_switches_for(exam)
            if self.is_expired(attempt, exam, now):
                self._finalize(handle, exam, SUBMITTED, now)
                expired = True
            else:
                count, flagged = register_switch(attempt.get("tab_switch_count") or 0, max_switches)
                handle.set_tab_switch_count(count)
                grade = self._finalize(handle, exam, FLAGGED, now) if flagged else None
        if expired:
            raise InvalidState("time limit expired; attempt submitted", code="time_expired")
        if flagged:
            print(f"[exam] attempt {attempt['id']} flagged after {count} tab switches (max {max_switches})")
        return {
            "tab_switch_count": count,
            "flagged": flagged,
            "remaining": remaining_switches(count, max_switches),
            "max_tab_switches": max_switches,
            "result": grade_summary(grade) if grade else None,
        }

    def submit(self, student_id: Any, attempt_id: Any) -> Dict[str, Any]:
        # A countdown-driven submit is an ordinary submit; a late one is still
        # honored because late answer saves were already refused.
        with self.ledger.locked(attempt_id) as handle:
            attempt = self._owned(handle.attempt if handle else None, student_id)
            self._require_in_progress(attempt)
            exam = self._exam_for(attempt, handle)
            grade = self._finalize(handle, exam, SUBMITTED, self.now())
        out = {"attempt_id": attempt["id"], "status": SUBMITTED}
        out.update(grade_summary(grade))
        return out

    def get_result(self, student_id: Any, attempt_id: Any) -> Dict[str, Any]:
        attempt = self._owned(self.ledger.find_attempt_by_id(attempt_id), student_id)
        if attempt["status"] not in TERMINAL_STATUSES:
            raise InvalidState("exam not yet submitted")
        result = {
            "attempt_id": attempt["id"],
            "attempt_number": attempt.get("attempt_number"),
            "status": attempt["status"],
            "started_at": _iso(attempt.get("started_at")),
            "submitted_at": _iso(attempt.get("submitted_at")),
            "tab_switch_count": attempt.get("tab_switch_count") or 0,
        }
        result.update(attempt.get("grade") or {})
        return result

    def get_attempt(self, student_id: Any, attempt_id: Any) -> Dict[str, Any]:
        attempt = self._owned(self.ledger.find_attempt_by_id(attempt_id), student_id)
        return self.attempt_view(attempt, self._exam_for(attempt))

    def available_exams(self, student_id: Any, course_id: Any) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for exam in self.exam_store.list_published(course_id):
            attempts = self.ledger.list_attempts(student_id, exam["id"])
            latest = attempts[0] if attempts else None
            completed = [a for a in attempts if a["status"] in TERMINAL_STATUSES]
            out.append({
                "id": exam["id"],
                "title": exam.get("title") or "",
                "description": exam.get("description") or "",
                "time_limit_minutes": exam.get("time_limit_minutes"),
                "max_tab_switches": max_switches_for(exam),
                "question_count": len(exam.get("questions") or []),
                "total_points": total_points(exam),
                "attempt_count": len(attempts),
                "attempt": {
                    "id": latest["id"],
                    "status": latest["status"],
                    "score": latest.get("score"),
                    "attempt_number": latest.get("attempt_number"),
                    "submitted_at": _iso(latest.get("submitted_at")),
                    "session_id": latest.get("session_id"),
                } if latest else None,
                "latest_score": completed[0].get("score") if completed else None,
                "attempt_history": [
                    {
                        "attempt_number": a.get("attempt_number"),
                        "status": a["status"],
                        "score": a.get("score"),
                        "submitted_at": _iso(a.get("submitted_at")),
                    }
                    for a in completed
                ],
            })
        return out

    def course_grade(self, student_id: Any, course_id: Any) -> Dict[str, Any]:
        """
        Course grade from the latest finished attempt on each published exam.
        Exams the student has not finished add nothing to earned or possible;
        with nothing finished, percentage and passed are None.
        """
        earned, possible = 0, 0
        rows: List[Dict[str, Any]] = []
        for exam in self.exam_store.list_published(course_id):
            finished = [a for a in self.ledger.list_attempts(student_id, exam["id"])
                        if a["status"] in TERMINAL_STATUSES]
            latest = finished[0] if finished else None
            score = latest.get("score") if latest else None
            exam_points = total_points(exam)
            if score is not None:
                # total as graded, not the exam's current total
                counted = latest.get("total_possible")
                earned += int(score)
                possible += int(counted if counted is not None else exam_points)
            rows.append({
                "exam_id": exam["id"],
                "exam_title": exam.get("title") or "",
                "total_points": exam_points,
                "score": score,
                "status": latest["status"] if latest else None,
                "attempt_number": latest.get("attempt_number") if latest else None,
                "attempt_count": len(finished),
                "graded_at": _iso(latest.get("submitted_at")) if latest else None,
            })

        graded = possible > 0
        return {
            "course_id": course_id,
            "exams": rows,
            "earned": earned,
            "possible": possible,
            "percentage": percentage_of(earned, possible) if graded else None,
            "passed": is_passing(earned, possible) if graded else None,
            "pass_percent": PASS_PERCENT,
        }


__all__ = ["AttemptEngine", "DEFAULT_GRACE_SECONDS"]

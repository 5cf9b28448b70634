# scoring.py
# -----------------------------------------------------------------------------
# Scoring engine for multiple-choice exams.
# - All-or-nothing per question: full points for a correct choice, else 0
# - Unanswered questions earn 0 (no penalty)
# - A question with no choice marked correct can never be answered correctly
# - Pass threshold is a fixed policy constant
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Optional

PASS_PERCENT = 75


def _correct_choice_id(question: Dict[str, Any]) -> Optional[str]:
    for c in question.get("choices") or []:
        if c.get("is_correct"):
            return c.get("id")
    return None


def _is_correct_choice(question: Dict[str, Any], choice_id: Optional[str]) -> bool:
    if choice_id is None:
        return False
    for c in question.get("choices") or []:
        if str(c.get("id")) == str(choice_id):
            return bool(c.get("is_correct"))
    return False


def percentage_of(score: int, total_possible: int) -> float:
    if total_possible <= 0:
        return 0.0
    return round(100.0 * score / total_possible, 2)


def is_passing(score: int, total_possible: int) -> bool:
    # integer comparison so 75.0% exactly passes regardless of float rounding
    if total_possible <= 0:
        return False
    return score * 100 >= PASS_PERCENT * total_possible


def grade_attempt(exam: Dict[str, Any], answers: Dict[str, Any]) -> Dict[str, Any]:
    """
    Grade an answer map (question_id -> choice_id) against an exam definition.

    The returned dict is self-contained: it embeds the question text, the
    choices and which one was correct at grading time, so it can be stored
    and served later without re-reading a possibly edited exam.
    """
    answers = {str(k): v for k, v in (answers or {}).items()}
    score, total_possible = 0, 0
    breakdown: List[Dict[str, Any]] = []

    for q in exam.get("questions") or []:
        qid = str(q.get("id"))
        points = int(q.get("points") or 0)
        total_possible += points

        selected = answers.get(qid)
        selected = str(selected) if selected is not None else None
        correct = _is_correct_choice(q, selected)
        earned = points if correct else 0
        score += earned

        breakdown.append({
            "question_id": qid,
            "text": q.get("text") or "",
            "points": points,
            "order": q.get("order"),
            "choices": [
                {
                    "id": str(c.get("id")),
                    "text": c.get("text") or "",
                    "is_correct": bool(c.get("is_correct")),
                    "is_selected": selected is not None and str(c.get("id")) == selected,
                }
                for c in (q.get("choices") or [])
            ],
            "selected_choice_id": selected,
            "correct_choice_id": _correct_choice_id(q),
            "is_correct": correct,
            "earned_points": earned,
        })

    return {
        "exam_id": exam.get("id"),
        "exam_title": exam.get("title") or "",
        "score": score,
        "total_possible": total_possible,
        "percentage": percentage_of(score, total_possible),
        "passed": is_passing(score, total_possible),
        "pass_percent": PASS_PERCENT,
        "questions": breakdown,
    }


def grade_summary(grade: Dict[str, Any]) -> Dict[str, Any]:
    """The short form returned by submit: score, total, percentage, pass/fail."""
    return {
        "score": grade.get("score", 0),
        "total_possible": grade.get("total_possible", 0),
        "percentage": grade.get("percentage", 0.0),
        "passed": bool(grade.get("passed")),
    }


def correctness_by_question(grade: Dict[str, Any]) -> Dict[str, bool]:
    """question_id -> is_correct for every answered question."""
    return {
        q["question_id"]: bool(q.get("is_correct"))
        for q in grade.get("questions") or []
        if q.get("selected_choice_id") is not None
    }


__all__ = [
    "PASS_PERCENT",
    "grade_attempt",
    "grade_summary",
    "correctness_by_question",
    "percentage_of",
    "is_passing",
]

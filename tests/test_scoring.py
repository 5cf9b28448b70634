import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scoring import (  # noqa: E402
    PASS_PERCENT,
    correctness_by_question,
    grade_attempt,
    grade_summary,
    is_passing,
    percentage_of,
)


def _two_question_exam():
    return {
        "id": "exam-1",
        "title": "Midterm",
        "questions": [
            {
                "id": "q1", "text": "First", "points": 10, "order": 1,
                "choices": [
                    {"id": "q1-a", "text": "A", "is_correct": True},
                    {"id": "q1-b", "text": "B", "is_correct": False},
                ],
            },
            {
                "id": "q2", "text": "Second", "points": 20, "order": 2,
                "choices": [
                    {"id": "q2-a", "text": "A", "is_correct": False},
                    {"id": "q2-b", "text": "B", "is_correct": True},
                ],
            },
        ],
    }


def test_one_correct_one_wrong_scores_a_third():
    grade = grade_attempt(_two_question_exam(), {"q1": "q1-a", "q2": "q2-a"})

    assert grade["score"] == 10
    assert grade["total_possible"] == 30
    assert grade["percentage"] == 33.33
    assert grade["passed"] is False


def test_all_correct_passes():
    grade = grade_attempt(_two_question_exam(), {"q1": "q1-a", "q2": "q2-b"})

    assert grade["score"] == 30
    assert grade["percentage"] == 100.0
    assert grade["passed"] is True


def test_unanswered_question_earns_nothing():
    grade = grade_attempt(_two_question_exam(), {"q2": "q2-b"})

    first = grade["questions"][0]
    assert first["selected_choice_id"] is None
    assert first["earned_points"] == 0
    assert first["is_correct"] is False
    assert first["correct_choice_id"] == "q1-a"
    assert grade["score"] == 20
    assert grade["total_possible"] == 30


def test_empty_exam_has_zero_percentage_and_fails():
    grade = grade_attempt({"id": "empty", "questions": []}, {})

    assert grade["total_possible"] == 0
    assert grade["percentage"] == 0.0
    assert grade["passed"] is False


def test_question_without_correct_choice_can_never_be_right():
    exam = {
        "id": "exam-2",
        "questions": [{
            "id": "q1", "text": "Draft", "points": 5,
            "choices": [
                {"id": "a", "text": "A", "is_correct": False},
                {"id": "b", "text": "B", "is_correct": False},
            ],
        }],
    }
    grade = grade_attempt(exam, {"q1": "a"})

    assert grade["score"] == 0
    assert grade["questions"][0]["correct_choice_id"] is None
    assert grade["questions"][0]["is_correct"] is False


def test_breakdown_marks_selected_and_correct_choices():
    grade = grade_attempt(_two_question_exam(), {"q2": "q2-a"})

    choices = {c["id"]: c for c in grade["questions"][1]["choices"]}
    assert choices["q2-a"]["is_selected"] is True
    assert choices["q2-a"]["is_correct"] is False
    assert choices["q2-b"]["is_selected"] is False
    assert choices["q2-b"]["is_correct"] is True
    assert grade["exam_title"] == "Midterm"
    assert grade["pass_percent"] == PASS_PERCENT


def test_unknown_choice_id_earns_nothing():
    grade = grade_attempt(_two_question_exam(), {"q1": "not-a-choice"})
    assert grade["score"] == 0


def test_pass_threshold_is_inclusive():
    assert is_passing(3, 4) is True  # exactly 75%
    assert is_passing(74, 100) is False
    assert is_passing(0, 0) is False
    assert percentage_of(2, 3) == 66.67
    assert percentage_of(5, 0) == 0.0


def test_summary_and_correctness_helpers():
    grade = grade_attempt(_two_question_exam(), {"q1": "q1-a", "q2": "q2-a"})

    assert grade_summary(grade) == {
        "score": 10,
        "total_possible": 30,
        "percentage": 33.33,
        "passed": False,
    }
    assert correctness_by_question(grade) == {"q1": True, "q2": False}

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_content_loader import load_exam_content, load_exams_from  # noqa: E402
from exam_store import (  # noqa: E402
    MemoryExamStore,
    PgExamStore,
    normalize_exam,
    student_view,
    total_points,
)


def test_normalize_orders_questions_and_choices():
    exam = normalize_exam({
        "id": 9,
        "title": "Ordering",
        "max_tab_switches": None,
        "questions": [
            {"id": "late", "text": "L", "points": 2, "order": 2, "choices": []},
            {"id": "early", "text": "E", "points": 0, "order": 1, "choices": [
                {"id": "z", "text": "Z", "order": 2},
                {"id": "y", "text": "Y", "order": 1, "is_correct": 1},
            ]},
        ],
    })

    assert exam["id"] == "9"
    assert [q["id"] for q in exam["questions"]] == ["early", "late"]
    assert [c["id"] for c in exam["questions"][0]["choices"]] == ["y", "z"]
    assert exam["questions"][0]["choices"][0]["is_correct"] is True
    assert exam["questions"][0]["points"] == 1
    assert exam["max_tab_switches"] == 3
    assert exam["time_limit_minutes"] is None
    assert exam["is_published"] is False
    assert total_points(exam) == 3


def test_student_view_strips_correct_flags():
    exam = normalize_exam({
        "id": "e", "questions": [{"id": "q", "text": "Q", "points": 4, "choices": [
            {"id": "a", "text": "A", "is_correct": True},
        ]}],
    })

    view = student_view(exam)
    assert view["questions"][0]["choices"] == [{"id": "a", "text": "A", "order": None}]
    assert view["total_points"] == 4


def test_memory_store_returns_copies_and_filters_by_course():
    store = MemoryExamStore([
        {"id": "a", "course_id": "c1", "is_published": True, "order": 2},
        {"id": "b", "course_id": "c1", "is_published": True, "order": 1},
        {"id": "c", "course_id": "c1", "is_published": False},
        {"id": "d", "course_id": "c2", "is_published": True},
    ])

    assert [e["id"] for e in store.list_published("c1")] == ["b", "a"]
    exam = store.get_exam("a")
    exam["title"] = "mutated"
    assert store.get_exam("a")["title"] == ""
    assert store.get_exam("missing") is None


def test_pg_store_assembles_choices_under_questions():
    def fetch_one(sql, params=()):
        if "FROM public.exams" in sql:
            return {"id": "exam-1", "course_id": "c1", "title": "T", "description": None,
                    "time_limit_minutes": 15, "max_tab_switches": 2,
                    "is_published": True, "order": 0}
        return None

    def fetch_all(sql, params=()):
        if "FROM public.exam_questions" in sql and "exam_choices" not in sql:
            return [{"id": "q1", "text": "Q", "points": 3, "order": 0}]
        if "FROM public.exam_choices" in sql:
            return [
                {"id": "c2", "question_id": "q1", "text": "no", "is_correct": False, "order": 1},
                {"id": "c1", "question_id": "q1", "text": "yes", "is_correct": True, "order": 0},
            ]
        return []

    exam = PgExamStore(fetch_one, fetch_all).get_exam("exam-1")

    assert exam["time_limit_minutes"] == 15
    assert exam["max_tab_switches"] == 2
    assert [c["id"] for c in exam["questions"][0]["choices"]] == ["c1", "c2"]
    assert PgExamStore(lambda *a, **k: None, fetch_all).get_exam("nope") is None


def test_load_exams_from_index(tmp_path):
    (tmp_path / "content_index.json").write_text(json.dumps({
        "exams": [
            {"file": "second.json", "order": 2, "course_id": "c1"},
            {"file": "first.json", "order": 1, "course_id": "c1"},
            {"file": "missing.json", "order": 3},
        ]
    }), encoding="utf-8")
    (tmp_path / "first.json").write_text(json.dumps({"id": "one"}), encoding="utf-8")
    (tmp_path / "second.json").write_text(json.dumps({"id": "two", "course_id": "own"}), encoding="utf-8")

    exams = load_exams_from(tmp_path)

    assert [e["id"] for e in exams] == ["one", "two"]
    assert exams[0]["course_id"] == "c1"
    assert exams[1]["course_id"] == "own"


def test_shipped_exam_content_is_valid():
    exams = [normalize_exam(e) for e in load_exam_content()]

    assert exams
    for exam in exams:
        assert exam["is_published"] is True
        for q in exam["questions"]:
            assert sum(1 for c in q["choices"] if c["is_correct"]) == 1

# exam_store.py
# -----------------------------------------------------------------------------
# Exam definitions: exams -> ordered questions -> ordered choices.
# Read-only from the attempt engine's side. Every read returns a fresh
# normalized dict; nothing is cached across an attempt.
# -----------------------------------------------------------------------------

import copy
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from integrity import max_switches_for


# ------------------------------- normalization -------------------------------
def _order_key(item: Dict[str, Any]):
    order = item.get("order")
    try:
        order_val = int(order)
    except (TypeError, ValueError):
        order_val = float("inf")
    return (order_val, str(item.get("id") or ""))


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def normalize_exam(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce an exam dict (JSON file or DB rows) into the shape the engine reads."""
    questions = []
    for q in raw.get("questions") or []:
        choices = [
            {
                "id": str(c.get("id")),
                "text": c.get("text") or "",
                "is_correct": bool(c.get("is_correct")),
                "order": c.get("order"),
            }
            for c in (q.get("choices") or [])
        ]
        questions.append({
            "id": str(q.get("id")),
            "text": q.get("text") or "",
            "points": max(1, int(q.get("points") or 1)),
            "order": q.get("order"),
            "choices": sorted(choices, key=_order_key),
        })

    exam = {
        "id": str(raw.get("id")),
        "course_id": raw.get("course_id"),
        "title": raw.get("title") or "",
        "description": raw.get("description") or "",
        "time_limit_minutes": _opt_int(raw.get("time_limit_minutes")),
        "is_published": bool(raw.get("is_published")),
        "order": raw.get("order"),
        "questions": sorted(questions, key=_order_key),
    }
    exam["max_tab_switches"] = max_switches_for(raw)
    return exam


def total_points(exam: Dict[str, Any]) -> int:
    return sum(int(q.get("points") or 0) for q in exam.get("questions") or [])


def student_view(exam: Dict[str, Any]) -> Dict[str, Any]:
    """Exam as shown to a student: no is_correct on choices."""
    return {
        "id": exam["id"],
        "course_id": exam.get("course_id"),
        "title": exam.get("title") or "",
        "description": exam.get("description") or "",
        "time_limit_minutes": exam.get("time_limit_minutes"),
        "max_tab_switches": exam.get("max_tab_switches"),
        "total_points": total_points(exam),
        "questions": [
            {
                "id": q["id"],
                "text": q["text"],
                "points": q["points"],
                "order": q.get("order"),
                "choices": [
                    {"id": c["id"], "text": c["text"], "order": c.get("order")}
                    for c in q.get("choices") or []
                ],
            }
            for q in exam.get("questions") or []
        ],
    }


def find_question(exam: Dict[str, Any], question_id: Any) -> Optional[Dict[str, Any]]:
    for q in exam.get("questions") or []:
        if q["id"] == str(question_id):
            return q
    return None


def find_choice(question: Dict[str, Any], choice_id: Any) -> Optional[Dict[str, Any]]:
    for c in question.get("choices") or []:
        if c["id"] == str(choice_id):
            return c
    return None


# --------------------------------- stores ------------------------------------
class MemoryExamStore:
    """Exams held in process memory (JSON content, demos, tests)."""

    def __init__(self, exams: Iterable[Dict[str, Any]] = ()):
        self._exams: Dict[str, Dict[str, Any]] = {}
        for raw in exams:
            self.put(raw)

    def put(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        exam = normalize_exam(copy.deepcopy(raw))
        self._exams[exam["id"]] = exam
        return copy.deepcopy(exam)

    def get_exam(self, exam_id: Any, cursor=None) -> Optional[Dict[str, Any]]:
        exam = self._exams.get(str(exam_id))
        return copy.deepcopy(exam) if exam else None

    def list_published(self, course_id: Any) -> List[Dict[str, Any]]:
        rows = [
            e for e in self._exams.values()
            if e.get("is_published") and str(e.get("course_id")) == str(course_id)
        ]
        return [copy.deepcopy(e) for e in sorted(rows, key=_order_key)]


class PgExamStore:
    """
    Exams read from PostgreSQL.
    deps-style collaborators: fetch_one(sql, params), fetch_all(sql, params)
    """

    _EXAM_COLUMNS = """
        id, course_id, title, description, time_limit_minutes,
        max_tab_switches, is_published, sort_order AS "order"
    """

    def __init__(self, fetch_one: Callable, fetch_all: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all

    def _readers(self, cursor=None) -> Tuple[Callable, Callable]:
        """fetch_one/fetch_all pair: the pool helpers, or an open cursor when called inside a transaction."""
        if cursor is None:
            return self.fetch_one, self.fetch_all

        def _one(sql, params=()):
            cursor.execute(sql, params)
            return cursor.fetchone()

        def _all(sql, params=()):
            cursor.execute(sql, params)
            return cursor.fetchall()

        return _one, _all

    def _assemble(self, exam_row: Dict[str, Any], fetch_all: Callable) -> Dict[str, Any]:
        questions = fetch_all("""
            SELECT id, text, points, sort_order AS "order"
              FROM public.exam_questions
             WHERE exam_id = %s
             ORDER BY sort_order, id;
        """, (exam_row["id"],))
        choices = fetch_all("""
            SELECT c.id, c.question_id, c.text, c.is_correct, c.sort_order AS "order"
              FROM public.exam_choices c
              JOIN public.exam_questions q ON q.id = c.question_id
             WHERE q.exam_id = %s
             ORDER BY c.sort_order, c.id;
        """, (exam_row["id"],))

        by_question: Dict[str, List[Dict[str, Any]]] = {}
        for c in choices or []:
            by_question.setdefault(str(c["question_id"]), []).append(c)

        raw = dict(exam_row)
        raw["questions"] = [
            dict(q, choices=by_question.get(str(q["id"]), []))
            for q in questions or []
        ]
        return normalize_exam(raw)

    def get_exam(self, exam_id: Any, cursor=None) -> Optional[Dict[str, Any]]:
        fetch_one, fetch_all = self._readers(cursor)
        row = fetch_one(f"""
            SELECT {self._EXAM_COLUMNS}
              FROM public.exams
             WHERE id = %s;
        """, (str(exam_id),))
        if not row:
            return None
        return self._assemble(row, fetch_all)

    def list_published(self, course_id: Any) -> List[Dict[str, Any]]:
        rows = self.fetch_all(f"""
            SELECT {self._EXAM_COLUMNS}
              FROM public.exams
             WHERE course_id = %s AND is_published
             ORDER BY sort_order, id;
        """, (str(course_id),))
        return [self._assemble(r, self.fetch_all) for r in rows or []]


def ensure_exam_tables(execute: Callable):
    execute("""
        CREATE TABLE IF NOT EXISTS public.exams (
          id                  TEXT PRIMARY KEY,
          course_id           TEXT,
          title               TEXT NOT NULL,
          description         TEXT,
          time_limit_minutes  INTEGER,
          max_tab_switches    INTEGER NOT NULL DEFAULT 3,
          is_published        BOOLEAN NOT NULL DEFAULT FALSE,
          sort_order          INTEGER NOT NULL DEFAULT 0
        );
    """, ())
    execute("""
        CREATE TABLE IF NOT EXISTS public.exam_questions (
          id          TEXT PRIMARY KEY,
          exam_id     TEXT NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
          text        TEXT NOT NULL,
          points      INTEGER NOT NULL DEFAULT 1 CHECK (points >= 1),
          sort_order  INTEGER NOT NULL DEFAULT 0
        );
    """, ())
    execute("""
        CREATE TABLE IF NOT EXISTS public.exam_choices (
          id           TEXT PRIMARY KEY,
          question_id  TEXT NOT NULL REFERENCES public.exam_questions(id) ON DELETE CASCADE,
          text         TEXT NOT NULL,
          is_correct   BOOLEAN NOT NULL DEFAULT FALSE,
          sort_order   INTEGER NOT NULL DEFAULT 0
        );
    """, ())


__all__ = [
    "MemoryExamStore",
    "PgExamStore",
    "ensure_exam_tables",
    "normalize_exam",
    "student_view",
    "total_points",
    "find_question",
    "find_choice",
]

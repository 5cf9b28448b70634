# attempt_ledger.py
# -----------------------------------------------------------------------------
# Durable record of exam attempts.
# - One attempt per (student, exam, session); at most one IN_PROGRESS per (student, exam)
# - All writes to one attempt happen under `locked(attempt_id)`, which serializes
#   them per attempt (row lock in PostgreSQL, a per-attempt mutex in memory)
# - Finalization is compare-and-swap on status = IN_PROGRESS and commits the
#   score fields, per-answer correctness and the gradebook row together
# -----------------------------------------------------------------------------

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from exam_errors import InvalidState
from scoring import correctness_by_question

IN_PROGRESS = "IN_PROGRESS"
SUBMITTED = "SUBMITTED"
FLAGGED = "FLAGGED"
TERMINAL_STATUSES = (SUBMITTED, FLAGGED)


def new_attempt_id() -> str:
    return uuid.uuid4().hex


def _key(student_id: Any, exam_id: Any, session_id: Any = None) -> Tuple[str, str, str]:
    return (str(student_id), str(exam_id), str(session_id) if session_id is not None else "")


def _newest_first(attempts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(attempts, key=lambda a: (a["started_at"], a.get("attempt_number") or 0), reverse=True)


# =============================================================================
# In-memory ledger
# =============================================================================
class _MemoryAttemptHandle:
    """Mutations are staged on a private copy and published when the lock block exits cleanly."""

    cursor = None

    def __init__(self, attempt: Dict[str, Any]):
        self.attempt = attempt
        self.score_row: Optional[Dict[str, Any]] = None

    def upsert_answer(self, question_id: str, choice_id: str, at=None):
        self.attempt["answers"][str(question_id)] = str(choice_id)

    def set_tab_switch_count(self, count: int):
        self.attempt["tab_switch_count"] = int(count)

    def finalize_attempt(self, status: str, submitted_at, grade: Dict[str, Any]):
        if self.attempt["status"] != IN_PROGRESS:
            raise InvalidState("attempt already finalized")
        self.attempt.update({
            "status": status,
            "submitted_at": submitted_at,
            "score": grade["score"],
            "total_possible": grade["total_possible"],
            "percentage": grade["percentage"],
            "passed": grade["passed"],
            "grade": copy.deepcopy(grade),
            "answer_correctness": correctness_by_question(grade),
        })
        self.score_row = {"score": grade["score"], "graded_at": submitted_at}


class MemoryAttemptLedger:
    """Process-local ledger for development and tests. Not shared across workers."""

    def __init__(self):
        self._attempts: Dict[str, Dict[str, Any]] = {}
        self._attempt_locks: Dict[str, threading.Lock] = {}
        self._student_exam_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self.scores: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def _all_for(self, student_id: Any, exam_id: Any) -> List[Dict[str, Any]]:
        return [
            a for a in list(self._attempts.values())
            if a["student_id"] == str(student_id) and a["exam_id"] == str(exam_id)
        ]

    def find_attempt_by_id(self, attempt_id: Any) -> Optional[Dict[str, Any]]:
        a = self._attempts.get(str(attempt_id))
        return copy.deepcopy(a) if a else None

    def find_attempt(self, student_id: Any, exam_id: Any, session_id: Any = None) -> Optional[Dict[str, Any]]:
        key = _key(student_id, exam_id, session_id)
        for a in self._all_for(student_id, exam_id):
            if _key(a["student_id"], a["exam_id"], a["session_id"]) == key:
                return copy.deepcopy(a)
        return None

    def find_active_attempt(self, student_id: Any, exam_id: Any) -> Optional[Dict[str, Any]]:
        for a in self._all_for(student_id, exam_id):
            if a["status"] == IN_PROGRESS:
                return copy.deepcopy(a)
        return None

    def list_attempts(self, student_id: Any, exam_id: Any) -> List[Dict[str, Any]]:
        return [copy.deepcopy(a) for a in _newest_first(self._all_for(student_id, exam_id))]

    def create_attempt(self, student_id: Any, exam_id: Any, session_id: Any, started_at) -> Tuple[Dict[str, Any], bool]:
        """Returns (attempt, created). A concurrent or earlier start wins and is returned instead."""
        lock = self._student_exam_locks.setdefault((str(student_id), str(exam_id)), threading.Lock())
        with lock:
            existing = self.find_active_attempt(student_id, exam_id) or self.find_attempt(student_id, exam_id, session_id)
            if existing:
                return existing, False
            attempt = {
                "id": new_attempt_id(),
                "exam_id": str(exam_id),
                "student_id": str(student_id),
                "session_id": str(session_id) if session_id is not None else None,
                "attempt_number": len(self._all_for(student_id, exam_id)) + 1,
                "status": IN_PROGRESS,
                "started_at": started_at,
                "submitted_at": None,
                "tab_switch_count": 0,
                "score": None,
                "total_possible": None,
                "percentage": None,
                "passed": None,
                "grade": None,
                "answers": {},
                "answer_correctness": {},
            }
            self._attempts[attempt["id"]] = attempt
            return copy.deepcopy(attempt), True

    @contextmanager
    def locked(self, attempt_id: Any):
        attempt_id = str(attempt_id)
        lock = self._attempt_locks.setdefault(attempt_id, threading.Lock())
        with lock:
            current = self._attempts.get(attempt_id)
            if current is None:
                yield None
                return
            handle = _MemoryAttemptHandle(copy.deepcopy(current))
            yield handle
            self._attempts[attempt_id] = handle.attempt
            if handle.score_row is not None:
                self.scores[(handle.attempt["exam_id"], handle.attempt["student_id"])] = handle.score_row


# =============================================================================
# PostgreSQL ledger
# =============================================================================
ATTEMPT_COLUMNS = """
    id, exam_id, student_id, session_id, attempt_number, status,
    started_at, submitted_at, tab_switch_count,
    score, total_possible, percentage, passed, grade
"""


def _row_to_attempt(row: Dict[str, Any], answer_rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    attempt = dict(row)
    if isinstance(attempt.get("percentage"), Decimal):
        attempt["percentage"] = float(attempt["percentage"])
    grade = attempt.get("grade")
    if isinstance(grade, str):
        attempt["grade"] = json.loads(grade)
    attempt["answers"] = {str(r["question_id"]): str(r["choice_id"]) for r in answer_rows or []}
    return attempt


class _PgAttemptHandle:
    def __init__(self, cur, attempt: Dict[str, Any]):
        self.cur = cur
        self.attempt = attempt

    @property
    def cursor(self):
        return self.cur

    def upsert_answer(self, question_id: str, choice_id: str, at=None):
        self.cur.execute("""
            INSERT INTO public.exam_attempt_answers (attempt_id, question_id, choice_id, updated_at)
            VALUES (%s, %s, %s, COALESCE(%s, now()))
            ON CONFLICT (attempt_id, question_id)
            DO UPDATE SET choice_id = EXCLUDED.choice_id, updated_at = EXCLUDED.updated_at;
        """, (self.attempt["id"], str(question_id), str(choice_id), at))
        self.attempt["answers"][str(question_id)] = str(choice_id)

    def set_tab_switch_count(self, count: int):
        self.cur.execute("""
            UPDATE public.exam_attempts
               SET tab_switch_count = %s
             WHERE id = %s AND status = %s;
        """, (int(count), self.attempt["id"], IN_PROGRESS))
        self.attempt["tab_switch_count"] = int(count)

    def finalize_attempt(self, status: str, submitted_at, grade: Dict[str, Any]):
        self.cur.execute("""
            UPDATE public.exam_attempts
               SET status = %s,
                   submitted_at = %s,
                   score = %s,
                   total_possible = %s,
                   percentage = %s,
                   passed = %s,
                   grade = %s::jsonb
             WHERE id = %s AND status = %s
         RETURNING id;
        """, (
            status, submitted_at, grade["score"], grade["total_possible"],
            grade["percentage"], grade["passed"], json.dumps(grade),
            self.attempt["id"], IN_PROGRESS,
        ))
        if self.cur.fetchone() is None:
            raise InvalidState("attempt already finalized")

        correctness = correctness_by_question(grade)
        if correctness:
            self.cur.executemany("""
                UPDATE public.exam_attempt_answers
                   SET is_correct = %s
                 WHERE attempt_id = %s AND question_id = %s;
            """, [(ok, self.attempt["id"], qid) for qid, ok in correctness.items()])

        self.cur.execute("""
            INSERT INTO public.exam_scores (exam_id, student_id, score, graded_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (exam_id, student_id)
            DO UPDATE SET score = EXCLUDED.score, graded_at = EXCLUDED.graded_at;
        """, (self.attempt["exam_id"], self.attempt["student_id"], grade["score"], submitted_at))

        self.attempt.update({
            "status": status,
            "submitted_at": submitted_at,
            "score": grade["score"],
            "total_possible": grade["total_possible"],
            "percentage": grade["percentage"],
            "passed": grade["passed"],
            "grade": grade,
        })


class PgAttemptLedger:
    """
    Attempts stored in PostgreSQL.
    deps-style collaborators:
      - fetch_one(sql, params), fetch_all(sql, params)
      - transaction() -> context manager yielding a dict_row cursor
    """

    def __init__(self, fetch_one: Callable, fetch_all: Callable, transaction: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.transaction = transaction

    def _answers(self, attempt_id: str) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT question_id, choice_id
              FROM public.exam_attempt_answers
             WHERE attempt_id = %s;
        """, (attempt_id,))

    def _hydrate(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        return _row_to_attempt(row, self._answers(row["id"]))

    def find_attempt_by_id(self, attempt_id: Any) -> Optional[Dict[str, Any]]:
        return self._hydrate(self.fetch_one(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE id = %s;
        """, (str(attempt_id),)))

    def find_attempt(self, student_id: Any, exam_id: Any, session_id: Any = None) -> Optional[Dict[str, Any]]:
        return self._hydrate(self.fetch_one(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE student_id = %s
               AND exam_id = %s
               AND COALESCE(session_id, '') = %s
             LIMIT 1;
        """, _key(student_id, exam_id, session_id)))

    def find_active_attempt(self, student_id: Any, exam_id: Any) -> Optional[Dict[str, Any]]:
        return self._hydrate(self.fetch_one(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE student_id = %s
               AND exam_id = %s
               AND status = %s
             LIMIT 1;
        """, (str(student_id), str(exam_id), IN_PROGRESS)))

    def list_attempts(self, student_id: Any, exam_id: Any) -> List[Dict[str, Any]]:
        rows = self.fetch_all(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE student_id = %s AND exam_id = %s
             ORDER BY started_at DESC, attempt_number DESC;
        """, (str(student_id), str(exam_id)))
        # history only needs the answer map for the active attempt
        return [_row_to_attempt(r, []) for r in rows or []]

    def create_attempt(self, student_id: Any, exam_id: Any, session_id: Any, started_at) -> Tuple[Dict[str, Any], bool]:
        attempt_id = new_attempt_id()
        with self.transaction() as cur:
            cur.execute("""
                INSERT INTO public.exam_attempts
                    (id, exam_id, student_id, session_id, attempt_number, status, started_at, tab_switch_count)
                SELECT %s, %s, %s, %s, COUNT(*) + 1, %s, %s, 0
                  FROM public.exam_attempts
                 WHERE exam_id = %s AND student_id = %s
                ON CONFLICT DO NOTHING
                RETURNING id;
            """, (
                attempt_id, str(exam_id), str(student_id),
                str(session_id) if session_id is not None else None,
                IN_PROGRESS, started_at, str(exam_id), str(student_id),
            ))
            created = cur.fetchone() is not None

        if created:
            return self.find_attempt_by_id(attempt_id), True
        # lost to an existing or concurrent attempt: resume that one
        existing = self.find_active_attempt(student_id, exam_id) or self.find_attempt(student_id, exam_id, session_id)
        if existing is None:
            raise InvalidState("attempt could not be created")
        print(f"[ledger] start for student={student_id} exam={exam_id} joined attempt {existing['id']}")
        return existing, False

    @contextmanager
    def locked(self, attempt_id: Any):
        with self.transaction() as cur:
            cur.execute(f"""
                SELECT {ATTEMPT_COLUMNS}
                  FROM public.exam_attempts
                 WHERE id = %s
                   FOR UPDATE;
            """, (str(attempt_id),))
            row = cur.fetchone()
            if not row:
                yield None
                return
            cur.execute("""
                SELECT question_id, choice_id
                  FROM public.exam_attempt_answers
                 WHERE attempt_id = %s;
            """, (row["id"],))
            yield _PgAttemptHandle(cur, _row_to_attempt(row, cur.fetchall()))


def ensure_attempt_tables(execute: Callable):
    execute("""
        CREATE TABLE IF NOT EXISTS public.exam_attempts (
          id                TEXT PRIMARY KEY,
          exam_id           TEXT NOT NULL,
          student_id        TEXT NOT NULL,
          session_id        TEXT,
          attempt_number    INTEGER NOT NULL DEFAULT 1,
          status            TEXT NOT NULL DEFAULT 'IN_PROGRESS'
                            CHECK (status IN ('IN_PROGRESS', 'SUBMITTED', 'FLAGGED')),
          started_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
          submitted_at      TIMESTAMPTZ,
          tab_switch_count  INTEGER NOT NULL DEFAULT 0 CHECK (tab_switch_count >= 0),
          score             INTEGER,
          total_possible    INTEGER,
          percentage        NUMERIC(6, 2),
          passed            BOOLEAN,
          grade             JSONB
        );
    """, ())
    execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_session_uidx
            ON public.exam_attempts (student_id, exam_id, (COALESCE(session_id, '')));
    """, ())
    execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_active_uidx
            ON public.exam_attempts (student_id, exam_id)
         WHERE status = 'IN_PROGRESS';
    """, ())
    execute("""
        CREATE TABLE IF NOT EXISTS public.exam_attempt_answers (
          attempt_id   TEXT NOT NULL REFERENCES public.exam_attempts(id),
          question_id  TEXT NOT NULL,
          choice_id    TEXT NOT NULL,
          is_correct   BOOLEAN,
          updated_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (attempt_id, question_id)
        );
    """, ())
    execute("""
        CREATE TABLE IF NOT EXISTS public.exam_scores (
          exam_id     TEXT NOT NULL,
          student_id  TEXT NOT NULL,
          score       INTEGER NOT NULL,
          graded_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (exam_id, student_id)
        );
    """, ())


__all__ = [
    "IN_PROGRESS",
    "SUBMITTED",
    "FLAGGED",
    "TERMINAL_STATUSES",
    "MemoryAttemptLedger",
    "PgAttemptLedger",
    "ensure_attempt_tables",
]

import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempt_ledger import IN_PROGRESS, SUBMITTED, PgAttemptLedger, ensure_attempt_tables  # noqa: E402
from exam_errors import InvalidState  # noqa: E402
from scoring import grade_attempt  # noqa: E402

STARTED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": "att-1",
        "exam_id": "exam-1",
        "student_id": "7",
        "session_id": None,
        "attempt_number": 1,
        "status": IN_PROGRESS,
        "started_at": STARTED,
        "submitted_at": None,
        "tab_switch_count": 0,
        "score": None,
        "total_possible": None,
        "percentage": None,
        "passed": None,
        "grade": None,
    }
    row.update(overrides)
    return row


class FakeCursor:
    """Scripted cursor: each fetchone/fetchall pops the next queued result."""

    def __init__(self, one=(), many=()):
        self.one = list(one)
        self.many = list(many)
        self.executed = []
        self.executemany_calls = []

    def execute(self, sql, params=()):
        self.executed.append((sql, params))

    def executemany(self, sql, seq):
        self.executemany_calls.append((sql, list(seq)))

    def fetchone(self):
        return self.one.pop(0) if self.one else None

    def fetchall(self):
        return self.many.pop(0) if self.many else []


class FakeDB:
    def __init__(self, cursor):
        self.cursor = cursor
        self.committed = 0
        self.rolled_back = 0
        self.fetch_one_sql = []

    def fetch_one(self, sql, params=()):
        self.fetch_one_sql.append((sql, params))
        return None

    def fetch_all(self, sql, params=()):
        return []

    @contextmanager
    def transaction(self):
        try:
            yield self.cursor
        except Exception:
            self.rolled_back += 1
            raise
        else:
            self.committed += 1


def _exam():
    return {
        "id": "exam-1",
        "title": "Quiz",
        "questions": [{
            "id": "q1", "text": "Pick A", "points": 5,
            "choices": [
                {"id": "a", "text": "A", "is_correct": True},
                {"id": "b", "text": "B", "is_correct": False},
            ],
        }],
    }


def _ledger(cursor):
    db = FakeDB(cursor)
    return PgAttemptLedger(db.fetch_one, db.fetch_all, db.transaction), db


def test_locked_takes_row_lock_and_loads_answers():
    cur = FakeCursor(one=[_row()], many=[[{"question_id": "q1", "choice_id": "a"}]])
    ledger, db = _ledger(cur)

    with ledger.locked("att-1") as handle:
        assert handle.attempt["answers"] == {"q1": "a"}

    assert "FOR UPDATE" in cur.executed[0][0]
    assert cur.executed[0][1] == ("att-1",)
    assert db.committed == 1


def test_locked_missing_attempt_yields_none():
    ledger, db = _ledger(FakeCursor())

    with ledger.locked("nope") as handle:
        assert handle is None
    assert db.committed == 1


def test_finalize_writes_score_correctness_and_gradebook():
    cur = FakeCursor(one=[_row(), {"id": "att-1"}], many=[[{"question_id": "q1", "choice_id": "a"}]])
    ledger, db = _ledger(cur)
    grade = grade_attempt(_exam(), {"q1": "a"})
    finished = datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)

    with ledger.locked("att-1") as handle:
        handle.finalize_attempt(SUBMITTED, finished, grade)

    update_sql, update_params = cur.executed[2]
    assert "WHERE id = %s AND status = %s" in update_sql
    assert "RETURNING id" in update_sql
    assert update_params[0] == SUBMITTED
    assert update_params[-2:] == ("att-1", IN_PROGRESS)
    assert json.loads(update_params[6])["score"] == 5

    assert cur.executemany_calls[0][1] == [(True, "att-1", "q1")]
    score_sql, score_params = cur.executed[3]
    assert "public.exam_scores" in score_sql
    assert score_params == ("exam-1", "7", 5, finished)
    assert handle.attempt["status"] == SUBMITTED
    assert db.committed == 1


def test_finalize_losing_the_status_race_rolls_back():
    cur = FakeCursor(one=[_row(), None])
    ledger, db = _ledger(cur)
    grade = grade_attempt(_exam(), {})

    with pytest.raises(InvalidState):
        with ledger.locked("att-1") as handle:
            handle.finalize_attempt(SUBMITTED, STARTED, grade)

    assert db.rolled_back == 1
    assert db.committed == 0
    assert not any("exam_scores" in sql for sql, _ in cur.executed)


def test_answer_upsert_and_tab_count_update():
    cur = FakeCursor(one=[_row()])
    ledger, _ = _ledger(cur)

    with ledger.locked("att-1") as handle:
        handle.upsert_answer("q1", "b", STARTED)
        handle.set_tab_switch_count(2)

    upsert_sql, upsert_params = cur.executed[2]
    assert "ON CONFLICT (attempt_id, question_id)" in upsert_sql
    assert upsert_params == ("att-1", "q1", "b", STARTED)
    tab_sql, tab_params = cur.executed[3]
    assert "tab_switch_count" in tab_sql
    assert tab_params == (2, "att-1", IN_PROGRESS)
    assert handle.attempt["answers"] == {"q1": "b"}


def test_create_attempt_conflict_returns_existing():
    cur = FakeCursor(one=[None])
    existing = _row(id="att-0")

    def fetch_one(sql, params=()):
        if "status = %s" in sql:
            return existing
        return None

    ledger = PgAttemptLedger(fetch_one, lambda sql, params=(): [], FakeDB(cur).transaction)
    attempt, created = ledger.create_attempt("7", "exam-1", None, STARTED)

    assert created is False
    assert attempt["id"] == "att-0"
    assert "ON CONFLICT DO NOTHING" in cur.executed[0][0]


def test_rows_are_normalized_for_the_engine():
    stored = _row(
        status=SUBMITTED, score=5, total_possible=5,
        percentage=Decimal("100.00"), passed=True,
        grade=json.dumps({"score": 5, "total_possible": 5}),
    )
    ledger = PgAttemptLedger(
        lambda sql, params=(): stored,
        lambda sql, params=(): [{"question_id": "q1", "choice_id": "a"}],
        FakeDB(FakeCursor()).transaction,
    )

    attempt = ledger.find_attempt_by_id("att-1")
    assert attempt["percentage"] == 100.0
    assert isinstance(attempt["percentage"], float)
    assert attempt["grade"] == {"score": 5, "total_possible": 5}
    assert attempt["answers"] == {"q1": "a"}


def test_ensure_attempt_tables_creates_indexes():
    executed = []
    ensure_attempt_tables(lambda sql, params=(): executed.append(sql))

    joined = "\n".join(executed)
    assert "exam_attempts_session_uidx" in joined
    assert "WHERE status = 'IN_PROGRESS'" in joined
    assert "public.exam_scores" in joined

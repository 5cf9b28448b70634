"""Utilities for loading exam definitions from disk."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

EXAM_CONTENT_DIR = Path(__file__).resolve().parent / "exams"
EXAM_INDEX_FILE = "content_index.json"


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[exam_content] failed to load '{path}': {exc}")
        return None


def _sorted_entries(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _sort_key(entry: Dict[str, Any]):
        order = entry.get("order")
        try:
            order_val = int(order)
        except Exception:
            order_val = float("inf")
        return (order_val, str(entry.get("file") or ""))

    return sorted([dict(e) for e in entries if isinstance(e, dict)], key=_sort_key)


def load_exams_from(content_dir: Path) -> List[Dict[str, Any]]:
    """
    Read `content_index.json` in content_dir and every exam file it lists.
    Index entries carry `file` and optionally `order`, `course_id`; the
    index values fill in anything the exam file leaves out.
    """
    index_data = _safe_load_json(content_dir / EXAM_INDEX_FILE)
    if not isinstance(index_data, dict):
        return []

    exams: List[Dict[str, Any]] = []
    for entry in _sorted_entries(index_data.get("exams") or []):
        file_name = entry.get("file")
        if not file_name:
            continue
        exam_data = _safe_load_json(content_dir / str(file_name))
        if not isinstance(exam_data, dict):
            continue
        for key in ("order", "course_id"):
            if key not in exam_data and entry.get(key) is not None:
                exam_data[key] = entry[key]
        exams.append(exam_data)
    return exams


@lru_cache(maxsize=1)
def load_exam_content(content_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """Load the exam definitions shipped with the app (cached)."""
    return load_exams_from(Path(content_dir) if content_dir else EXAM_CONTENT_DIR)


__all__ = ["load_exam_content", "load_exams_from"]

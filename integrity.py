# integrity.py
# Tab-switch policy. A count equal to the exam's maximum is still allowed;
# only a count above it flags the attempt.

from typing import Any, Dict, Tuple

DEFAULT_MAX_TAB_SWITCHES = 3


def max_switches_for(exam: Dict[str, Any]) -> int:
    raw = (exam or {}).get("max_tab_switches")
    if raw is None:
        return DEFAULT_MAX_TAB_SWITCHES
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return DEFAULT_MAX_TAB_SWITCHES


def exceeds_limit(count: int, max_switches: int) -> bool:
    return int(count) > int(max_switches)


def remaining_switches(count: int, max_switches: int) -> int:
    return max(0, int(max_switches) - int(count))


def register_switch(current_count: int, max_switches: int) -> Tuple[int, bool]:
    """Returns (new_count, should_flag) for one more visibility-loss event."""
    new_count = int(current_count or 0) + 1
    return new_count, exceeds_limit(new_count, max_switches)


__all__ = [
    "DEFAULT_MAX_TAB_SWITCHES",
    "max_switches_for",
    "exceeds_limit",
    "remaining_switches",
    "register_switch",
]

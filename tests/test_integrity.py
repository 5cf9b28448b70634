import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from integrity import (  # noqa: E402
    DEFAULT_MAX_TAB_SWITCHES,
    exceeds_limit,
    max_switches_for,
    register_switch,
    remaining_switches,
)


def test_count_equal_to_max_is_allowed():
    assert exceeds_limit(3, 3) is False
    assert exceeds_limit(4, 3) is True


def test_register_switch_flags_only_past_the_max():
    assert register_switch(2, 3) == (3, False)
    assert register_switch(3, 3) == (4, True)
    assert register_switch(0, 0) == (1, True)


def test_remaining_never_negative():
    assert remaining_switches(1, 3) == 2
    assert remaining_switches(3, 3) == 0
    assert remaining_switches(5, 3) == 0


def test_max_switches_defaults_when_unset_or_bad():
    assert max_switches_for({}) == DEFAULT_MAX_TAB_SWITCHES
    assert max_switches_for({"max_tab_switches": None}) == DEFAULT_MAX_TAB_SWITCHES
    assert max_switches_for({"max_tab_switches": "oops"}) == DEFAULT_MAX_TAB_SWITCHES
    assert max_switches_for({"max_tab_switches": "5"}) == 5
    assert max_switches_for({"max_tab_switches": 0}) == 0

"""Tests for auto-trigger rules between cycles."""

from __future__ import annotations

from typing import List

from cycleflow.runtime.rules import find_triggered_cycles, last_run_iteration, triggered_by
from cycleflow.runtime.types import CycleOutcome


def _history(*runs) -> List[CycleOutcome]:
    return [CycleOutcome(iteration=i, cycle=c, outcome="ok") for i, c in runs]


CYCLES = [
    {"name": "coding", "prompt": "code"},
    {"name": "review", "prompt": "review", "after": ["coding"]},
    {"name": "gardening", "prompt": "tidy", "after": ["coding"], "min_interval": 3},
    {"name": "docs", "prompt": "docs", "after": ["review"]},
]


class TestFindTriggeredCycles:
    def test_definition_order(self, make_config) -> None:
        config = make_config(CYCLES)
        assert find_triggered_cycles(config, "coding", _history((1, "coding"))) == ["review", "gardening"]

    def test_accepts_cycle_list(self, make_config) -> None:
        config = make_config(CYCLES)
        assert find_triggered_cycles(config.cycles, "review", []) == ["docs"]

    def test_min_interval(self, make_config) -> None:
        """gardening last ran at 2: blocked at 4, eligible at 5."""
        config = make_config(CYCLES)
        history = _history((1, "coding"), (2, "gardening"), (3, "review"), (4, "coding"))

        assert "gardening" not in find_triggered_cycles(config, "coding", history, current_iteration=4)

        history += _history((5, "coding"))
        assert "gardening" in find_triggered_cycles(config, "coding", history, current_iteration=5)

    def test_current_iteration_defaults_to_latest(self, make_config) -> None:
        config = make_config(CYCLES)
        history = _history((2, "gardening"), (4, "coding"))
        assert "gardening" not in find_triggered_cycles(config, "coding", history)

    def test_never_triggers_itself(self, make_config) -> None:
        config = make_config([{"name": "loop", "prompt": "again", "after": ["loop"]}])
        assert find_triggered_cycles(config, "loop", []) == []

    def test_nothing_follows(self, make_config) -> None:
        assert find_triggered_cycles(make_config(CYCLES), "docs", []) == []

    def test_history_is_not_modified(self, make_config) -> None:
        history = _history((1, "coding"), (2, "gardening"))
        before = list(history)
        find_triggered_cycles(make_config(CYCLES), "coding", history, current_iteration=9)
        assert history == before

    def test_triggered_by_set_form(self, make_config) -> None:
        assert triggered_by("coding", make_config(CYCLES), []) == frozenset({"review", "gardening"})


def test_last_run_iteration() -> None:
    history = _history((1, "coding"), (7, "coding"), (3, "coding"), (5, "review"))
    assert last_run_iteration("coding", history) == 7
    assert last_run_iteration("docs", history) is None

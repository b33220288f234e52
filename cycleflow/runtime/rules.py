"""
rules.py - Auto-trigger rules between cycles.

A cycle may declare ``after: [other, ...]`` to run automatically once one of
those cycles completes, and ``min_interval: N`` to rate-limit that trigger:
it fires only if the cycle has never run, or at least N iterations have
passed since it last ran.

These are pure queries over the config and the outcome history. They never
modify the history and return the same answer for the same inputs.

Usage:
    from cycleflow.runtime.rules import find_triggered_cycles

    follow_ups = find_triggered_cycles(config, "coding", history, current_iteration=5)
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional, Sequence, Union

from cycleflow.config.cycle_config import CycleConfig, FlowConfig

from .types import CycleOutcome

CycleDefinitions = Union[FlowConfig, Sequence[CycleConfig]]


def _cycles(definitions: CycleDefinitions) -> Sequence[CycleConfig]:
    if isinstance(definitions, FlowConfig):
        return definitions.cycles
    return definitions


def last_run_iteration(cycle_name: str, history: Iterable[CycleOutcome]) -> Optional[int]:
    last: Optional[int] = None
    for outcome in history:
        if outcome.cycle == cycle_name and (last is None or outcome.iteration > last):
            last = outcome.iteration
    return last


def interval_satisfied(
    cycle: CycleConfig,
    history: Sequence[CycleOutcome],
    current_iteration: int,
) -> bool:
    if cycle.min_interval is None:
        return True
    last = last_run_iteration(cycle.name, history)
    if last is None:
        return True
    return current_iteration - last >= cycle.min_interval


def find_triggered_cycles(
    definitions: CycleDefinitions,
    completed_cycle: str,
    history: Sequence[CycleOutcome],
    current_iteration: Optional[int] = None,
) -> List[str]:
    """Cycles that should run after ``completed_cycle``, in definition order.

    Args:
        definitions: The FlowConfig or its list of cycles.
        completed_cycle: Name of the cycle that just completed.
        history: Outcome history, oldest first.
        current_iteration: Iteration at which ``completed_cycle`` finished;
            defaults to the highest iteration in ``history``.

    Returns:
        Names of eligible cycles. A cycle never triggers itself.
    """
    if current_iteration is None:
        current_iteration = max((o.iteration for o in history), default=0)

    triggered = []
    for cycle in _cycles(definitions):
        if cycle.name == completed_cycle or completed_cycle not in cycle.after:
            continue
        if interval_satisfied(cycle, history, current_iteration):
            triggered.append(cycle.name)
    return triggered


def triggered_by(
    completed_cycle: str,
    definitions: CycleDefinitions,
    history: Sequence[CycleOutcome],
    current_iteration: Optional[int] = None,
) -> FrozenSet[str]:
    """Set form of find_triggered_cycles."""
    return frozenset(find_triggered_cycles(definitions, completed_cycle, history, current_iteration))

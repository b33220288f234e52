"""
context.py - Iteration history injected into cycle prompts.

A cycle's ``context`` setting controls how much of the outcome log its steps
see:

- ``none``: nothing is injected
- ``summaries``: one line per past iteration
- ``full``: a section per past iteration with timing, cost and files

The block is prepended to every step prompt, separated by a horizontal rule.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from cycleflow.config.cycle_config import ContextMode

from ._time import _datetime_to_iso
from .types import CycleOutcome

CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_HISTORY = "No previous iterations."


def _summaries(outcomes: Sequence[CycleOutcome]) -> str:
    lines = ["## Previous Iteration Summaries", ""]
    if not outcomes:
        lines.append(NO_HISTORY)
    for outcome in outcomes:
        lines.append(f"- Iteration {outcome.iteration} [{outcome.cycle}]: {outcome.outcome}")
    return "\n".join(lines)


def _full(outcomes: Sequence[CycleOutcome]) -> str:
    lines: List[str] = ["## Full Iteration History", ""]
    if not outcomes:
        lines.append(NO_HISTORY)
    for outcome in outcomes:
        lines.append(f"### Iteration {outcome.iteration} - {outcome.cycle}")
        lines.append(f"Timestamp: {_datetime_to_iso(outcome.timestamp)}")
        lines.append(f"Outcome: {outcome.outcome}")
        if outcome.status.value != "succeeded":
            lines.append(f"Status: {outcome.status.value} ({outcome.stop_reason.value})")
        lines.append(f"Duration: {outcome.duration_secs:g}s")
        if outcome.num_turns is not None:
            lines.append(f"Turns: {outcome.num_turns}")
        if outcome.total_cost_usd is not None:
            lines.append(f"Cost: ${outcome.total_cost_usd:.4f}")
        if outcome.files_changed:
            lines.append(f"Files changed: {', '.join(outcome.files_changed)}")
        if outcome.permission_denial_count:
            lines.append(f"Permission denials: {outcome.permission_denial_count}")
        lines.append("")
    return "\n".join(lines)


def build_context(mode: ContextMode, outcomes: Sequence[CycleOutcome]) -> Optional[str]:
    """Render the history block for ``mode``, or None when nothing is injected."""
    if mode == ContextMode.SUMMARIES:
        return _summaries(outcomes)
    if mode == ContextMode.FULL:
        return _full(outcomes)
    return None


def inject_context(prompt: str, context: Optional[str]) -> str:
    if context is None:
        return prompt
    return f"{context}{CONTEXT_SEPARATOR}{prompt}"

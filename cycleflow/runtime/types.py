"""
types.py - Outcome records produced by the cycle executor.

StepOutcome is produced once per executed step. CycleOutcome aggregates the
step outcomes of one cycle execution and is the record appended to the
outcome log.

A cycle is either an implicit single step (legacy flat prompt) or an explicit
multi-step cycle. CycleOutcome models that as ``steps is None`` versus a list
of StepOutcomes, and serialization writes the legacy flat record (no
``steps`` key) for the implicit variant so old and new readers agree.

Usage:
    from cycleflow.runtime.types import (
        CycleOutcome, StepOutcome, CycleStatus, StopReason,
        build_cycle_outcome,
        cycle_outcome_to_dict, cycle_outcome_from_dict,
        step_outcome_to_dict, step_outcome_from_dict,
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow


class CycleStatus(str, Enum):
    """Terminal status of one cycle execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class StopReason(str, Enum):
    """Why a cycle execution stopped.

    COMPLETED and ROUTER_DONE are normal finishes. VISIT_CAP is a forced but
    non-failing stop of a looping model-directed cycle. CANCELED is the
    interrupt path. Everything else is a failure.
    """

    COMPLETED = "completed"  # last step in declared order finished
    ROUTER_DONE = "router_done"  # model-directed router reported completion
    VISIT_CAP = "visit_cap"  # model-directed target exceeded max_visits
    INVOCATION_FAILURE = "invocation_failure"
    EXECUTION_FAILURE = "execution_failure"
    CIRCUIT_BREAKER = "circuit_breaker"
    DENIAL_GATE = "denial_gate"
    SESSION_CONTINUATION = "session_continuation"
    CANCELED = "canceled"

    @property
    def is_failure(self) -> bool:
        return self not in _NON_FAILURE_REASONS


_NON_FAILURE_REASONS = frozenset(
    {StopReason.COMPLETED, StopReason.ROUTER_DONE, StopReason.VISIT_CAP, StopReason.CANCELED}
)


@dataclass
class StepOutcome:
    """Result of one agent invocation within a cycle.

    Attributes:
        name: Step name (the cycle name for implicit single-step cycles).
        session_tag: Session tag the step ran under, if any.
        duration_secs: Wall-clock duration of the subprocess.
        num_turns: Turn count from the terminal result event.
        total_cost_usd: Cost from the terminal result event.
        permission_denials: Literal denied capability strings.
        files_touched: Files edited or written, deduplicated in first-seen order.
        tests_passed: Best-effort sum of "<N> passed" reports in tool output.
        summary: Free-text result from the terminal result event.
        success: Exit status 0 and a non-error terminal result was seen.
        session_id: Continuation handle reported by the agent, if any.
        resumed: Whether the step continued an existing session.
        exit_code: Subprocess exit code (None if it never started or was killed).
        anomalies: Warning-level irregularities (negative counters, broken sessions).
        route_reason: Why the router chose the step that followed this one.
    """

    name: str
    session_tag: Optional[str] = None
    duration_secs: float = 0.0
    num_turns: int = 0
    total_cost_usd: float = 0.0
    permission_denials: List[str] = field(default_factory=list)
    files_touched: List[str] = field(default_factory=list)
    tests_passed: int = 0
    summary: str = ""
    success: bool = False
    session_id: Optional[str] = None
    resumed: bool = False
    exit_code: Optional[int] = None
    anomalies: List[str] = field(default_factory=list)
    route_reason: Optional[str] = None

    @property
    def permission_denial_count(self) -> int:
        return len(self.permission_denials)


@dataclass
class CycleOutcome:
    """Aggregated outcome of one cycle execution.

    Attributes:
        iteration: 1-based iteration number of the outer run loop.
        cycle: Cycle name.
        timestamp: When the cycle execution finished.
        outcome: Last non-empty step summary, or a generated status line.
        files_changed: Union of files touched by all steps.
        tests_passed: Sum of tests passed across steps.
        duration_secs: Sum of step durations.
        num_turns: Sum of step turns (None when no turns were reported).
        total_cost_usd: Sum of step costs (None when no cost was reported).
        permission_denial_count: Number of denials (None when zero).
        permission_denials: Literal denied capabilities (None when empty).
        status: Terminal status.
        stop_reason: Why the execution stopped.
        stop_detail: Human-readable detail for the stop reason.
        steps: Per-step outcomes for multi-step cycles; None for implicit
            single-step cycles (serialized in the legacy flat shape).
    """

    iteration: int
    cycle: str
    timestamp: datetime = field(default_factory=_utcnow)
    outcome: str = ""
    files_changed: List[str] = field(default_factory=list)
    tests_passed: int = 0
    duration_secs: float = 0.0
    num_turns: Optional[int] = None
    total_cost_usd: Optional[float] = None
    permission_denial_count: Optional[int] = None
    permission_denials: Optional[List[str]] = None
    status: CycleStatus = CycleStatus.SUCCEEDED
    stop_reason: StopReason = StopReason.COMPLETED
    stop_detail: str = ""
    steps: Optional[List[StepOutcome]] = None

    @property
    def success(self) -> bool:
        return self.status == CycleStatus.SUCCEEDED

    @property
    def is_multi_step(self) -> bool:
        return self.steps is not None

    @property
    def incomplete(self) -> bool:
        """True when the execution was interrupted before it could finish."""
        return self.status == CycleStatus.CANCELED


# =============================================================================
# Aggregation
# =============================================================================


def _status_for(stop_reason: StopReason) -> CycleStatus:
    if stop_reason == StopReason.CANCELED:
        return CycleStatus.CANCELED
    if stop_reason.is_failure:
        return CycleStatus.FAILED
    return CycleStatus.SUCCEEDED


def _fallback_outcome_text(status: CycleStatus, stop_reason: StopReason, stop_detail: str) -> str:
    if status == CycleStatus.SUCCEEDED:
        return "Completed successfully"
    label = "Canceled" if status == CycleStatus.CANCELED else "Failed"
    if stop_detail:
        return f"{label} ({stop_reason.value}): {stop_detail}"
    return f"{label} ({stop_reason.value})"


def build_cycle_outcome(
    cycle: str,
    iteration: int,
    step_outcomes: Sequence[StepOutcome],
    stop_reason: StopReason,
    stop_detail: str = "",
    multi_step: bool = True,
    timestamp: Optional[datetime] = None,
) -> CycleOutcome:
    """Aggregate step outcomes into a CycleOutcome.

    Totals are sums over the steps, files are unioned in first-seen order and
    the overall outcome text is the last non-empty step summary.

    Args:
        cycle: Cycle name.
        iteration: Iteration number assigned by the run loop.
        step_outcomes: Step outcomes in execution order.
        stop_reason: Why the execution stopped.
        stop_detail: Human-readable detail for the stop reason.
        multi_step: False for implicit single-step cycles (no per-step records).
        timestamp: Completion time; defaults to now.

    Returns:
        The aggregated CycleOutcome.
    """
    status = _status_for(stop_reason)

    total_turns = sum(s.num_turns for s in step_outcomes)
    total_cost = sum(s.total_cost_usd for s in step_outcomes)
    denials: List[str] = []
    files: List[str] = []
    for step in step_outcomes:
        denials.extend(step.permission_denials)
        for path in step.files_touched:
            if path not in files:
                files.append(path)

    summaries = [s.summary for s in step_outcomes if s.summary.strip()]
    outcome_text = summaries[-1] if summaries else _fallback_outcome_text(status, stop_reason, stop_detail)

    return CycleOutcome(
        iteration=iteration,
        cycle=cycle,
        timestamp=timestamp or _utcnow(),
        outcome=outcome_text,
        files_changed=files,
        tests_passed=sum(s.tests_passed for s in step_outcomes),
        duration_secs=round(sum(s.duration_secs for s in step_outcomes), 3),
        num_turns=total_turns if total_turns > 0 else None,
        total_cost_usd=total_cost if total_cost > 0 else None,
        permission_denial_count=len(denials) if denials else None,
        permission_denials=denials or None,
        status=status,
        stop_reason=stop_reason,
        stop_detail=stop_detail,
        steps=list(step_outcomes) if multi_step else None,
    )


# =============================================================================
# Serialization
# =============================================================================


def step_outcome_to_dict(step: StepOutcome) -> Dict[str, Any]:
    """Convert StepOutcome to a dictionary for serialization."""
    data: Dict[str, Any] = {
        "name": step.name,
        "duration_secs": step.duration_secs,
        "num_turns": step.num_turns,
        "total_cost_usd": step.total_cost_usd,
        "permission_denial_count": step.permission_denial_count,
        "permission_denials": list(step.permission_denials),
        "files_touched": list(step.files_touched),
        "tests_passed": step.tests_passed,
        "summary": step.summary,
        "success": step.success,
    }
    if step.session_tag is not None:
        data["session_tag"] = step.session_tag
    if step.session_id is not None:
        data["session_id"] = step.session_id
    if step.resumed:
        data["resumed"] = True
    if step.exit_code is not None:
        data["exit_code"] = step.exit_code
    if step.anomalies:
        data["anomalies"] = list(step.anomalies)
    if step.route_reason is not None:
        data["route_reason"] = step.route_reason
    return data


def step_outcome_from_dict(data: Dict[str, Any]) -> StepOutcome:
    """Parse StepOutcome from a dictionary."""
    return StepOutcome(
        name=data.get("name", ""),
        session_tag=data.get("session_tag"),
        duration_secs=float(data.get("duration_secs", 0.0)),
        num_turns=int(data.get("num_turns", 0)),
        total_cost_usd=float(data.get("total_cost_usd", 0.0)),
        permission_denials=list(data.get("permission_denials", [])),
        files_touched=list(data.get("files_touched", [])),
        tests_passed=int(data.get("tests_passed", 0)),
        summary=data.get("summary", ""),
        success=bool(data.get("success", False)),
        session_id=data.get("session_id"),
        resumed=bool(data.get("resumed", False)),
        exit_code=data.get("exit_code"),
        anomalies=list(data.get("anomalies", [])),
        route_reason=data.get("route_reason"),
    )


def cycle_outcome_to_dict(outcome: CycleOutcome) -> Dict[str, Any]:
    """Convert CycleOutcome to a dictionary for the outcome log.

    Optional aggregates are omitted when unset, and ``steps`` is omitted for
    implicit single-step cycles (and for multi-step cycles that ran no step),
    which keeps the record in the legacy single-step shape.
    """
    data: Dict[str, Any] = {
        "iteration": outcome.iteration,
        "cycle": outcome.cycle,
        "timestamp": _datetime_to_iso(outcome.timestamp),
        "outcome": outcome.outcome,
        "files_changed": list(outcome.files_changed),
        "tests_passed": outcome.tests_passed,
        "duration_secs": outcome.duration_secs,
    }
    if outcome.num_turns is not None:
        data["num_turns"] = outcome.num_turns
    if outcome.total_cost_usd is not None:
        data["total_cost_usd"] = outcome.total_cost_usd
    if outcome.permission_denial_count is not None:
        data["permission_denial_count"] = outcome.permission_denial_count
    if outcome.permission_denials is not None:
        data["permission_denials"] = list(outcome.permission_denials)
    data["status"] = outcome.status.value
    data["stop_reason"] = outcome.stop_reason.value
    if outcome.stop_detail:
        data["stop_detail"] = outcome.stop_detail
    if outcome.steps:
        data["steps"] = [step_outcome_to_dict(s) for s in outcome.steps]
    return data


def cycle_outcome_from_dict(data: Dict[str, Any]) -> CycleOutcome:
    """Parse CycleOutcome from a dictionary.

    Accepts legacy records that carry only the original single-step fields.
    """
    raw_steps = data.get("steps")
    status = CycleStatus(data.get("status", CycleStatus.SUCCEEDED.value))
    default_reason = StopReason.COMPLETED if status == CycleStatus.SUCCEEDED else StopReason.EXECUTION_FAILURE
    return CycleOutcome(
        iteration=int(data["iteration"]),
        cycle=data["cycle"],
        timestamp=_iso_to_datetime(data.get("timestamp")) or _utcnow(),
        outcome=data.get("outcome", ""),
        files_changed=list(data.get("files_changed", [])),
        tests_passed=int(data.get("tests_passed", 0)),
        duration_secs=float(data.get("duration_secs", 0)),
        num_turns=data.get("num_turns"),
        total_cost_usd=data.get("total_cost_usd"),
        permission_denial_count=data.get("permission_denial_count"),
        permission_denials=data.get("permission_denials"),
        status=status,
        stop_reason=StopReason(data.get("stop_reason", default_reason.value)),
        stop_detail=data.get("stop_detail", ""),
        steps=[step_outcome_from_dict(s) for s in raw_steps] if raw_steps else None,
    )

# cycleflow/runtime package
# Executes cycles against the agent CLI and records their outcomes.
#
# Core components:
#   - types: StepOutcome / CycleOutcome records and their serialization
#   - executor: CycleExecutor, which runs one cycle step by step
#   - router, session, permissions, circuit_breaker: per-step policy
#   - rules: auto-trigger queries over the outcome history
#   - storage: the append-only outcome log
#
# Usage:
#     from cycleflow.runtime import CycleExecutor, OutcomeLog
#     outcome = await CycleExecutor(config, project_root).execute("coding", 1)
#     OutcomeLog(log_dir).append(outcome)

from .executor import CycleExecutor, PreparedCycle
from .rules import find_triggered_cycles, triggered_by
from .storage import OutcomeLog
from .types import (
    CycleOutcome,
    CycleStatus,
    StepOutcome,
    StopReason,
    build_cycle_outcome,
    cycle_outcome_from_dict,
    cycle_outcome_to_dict,
)

__all__ = [
    "CycleExecutor",
    "CycleOutcome",
    "CycleStatus",
    "OutcomeLog",
    "PreparedCycle",
    "StepOutcome",
    "StopReason",
    "build_cycle_outcome",
    "cycle_outcome_from_dict",
    "cycle_outcome_to_dict",
    "find_triggered_cycles",
    "triggered_by",
]

"""
router.py - Step routing within one cycle execution.

The router is a state machine over step names. It starts at the first step
and, after each step completes, picks the next one:

- ``sequential`` (default): the next step in declared order, or Done after
  the last step.
- ``llm``: an injected decision function chooses the next step by name, or
  reports completion. Before a choice is honored the target's visit count is
  checked against its ``max_visits``; a choice that would exceed it forces
  Done with StopReason.VISIT_CAP instead of looping.

The decision function is a plain async callable so tests can swap in a
deterministic stub; cycleflow.runtime.engines.claude.router provides the one
that asks the agent.

Usage:
    router = StepRouter(cycle.effective_steps(), decide=decider)
    step = router.start()
    while step is not None:
        ...run step...
        decision = await router.next_after(step, outcome.summary)
        step = decision.next_step
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from cycleflow.config.cycle_config import StepConfig, StepRouter as RouterMode
from cycleflow.errors import RoutingError

from .types import StopReason

logger = logging.getLogger(__name__)

DONE_TOKEN = "DONE"


# =============================================================================
# Decision function boundary
# =============================================================================


@dataclass(frozen=True)
class DecisionRequest:
    """What a decision function is told about the step that just finished.

    Attributes:
        completed_step: Name of the step that just finished.
        summary: Its output text.
        available_steps: Step names that may still be chosen, in declared order.
    """

    completed_step: str
    summary: str
    available_steps: List[str]


@dataclass(frozen=True)
class RouteChoice:
    """A decision function's answer: a step name, or None for Done."""

    next_step: Optional[str]
    reason: str = ""

    @property
    def done(self) -> bool:
        return self.next_step is None

    @classmethod
    def finish(cls, reason: str = "") -> "RouteChoice":
        return cls(next_step=None, reason=reason)


Decider = Callable[[DecisionRequest], Awaitable[RouteChoice]]


# =============================================================================
# Router state
# =============================================================================


@dataclass(frozen=True)
class RouteDecision:
    """The router's transition after a step.

    Attributes:
        next_step: The step to run next, or None when the cycle is done.
        reason: Why this transition was taken.
        stop_reason: How the cycle finished, when next_step is None.
    """

    next_step: Optional[StepConfig]
    reason: str
    stop_reason: Optional[StopReason] = None

    @property
    def done(self) -> bool:
        return self.next_step is None

    @property
    def forced(self) -> bool:
        return self.stop_reason == StopReason.VISIT_CAP


class VisitTracker:
    """Per-execution visit counts, keyed by step name."""

    def __init__(self) -> None:
        self._visits: Dict[str, int] = {}

    def record(self, step_name: str) -> int:
        self._visits[step_name] = self._visits.get(step_name, 0) + 1
        return self._visits[step_name]

    def count(self, step_name: str) -> int:
        return self._visits.get(step_name, 0)

    def would_exceed(self, step_name: str, max_visits: int) -> bool:
        """True if one more visit would go past ``max_visits``."""
        return self.count(step_name) >= max_visits

    def snapshot(self) -> Dict[str, int]:
        return dict(self._visits)


class StepRouter:
    """Drives step order for one cycle execution."""

    def __init__(self, steps: Sequence[StepConfig], decide: Optional[Decider] = None):
        if not steps:
            raise ValueError("StepRouter needs at least one step")
        self.steps = list(steps)
        self.decide = decide
        self.visits = VisitTracker()
        self._index: Dict[str, int] = {step.name: i for i, step in enumerate(self.steps)}

    def start(self) -> StepConfig:
        first = self.steps[0]
        self.visits.record(first.name)
        return first

    def available_steps(self) -> List[str]:
        """Steps a model-directed decision may still choose without hitting a cap."""
        return [s.name for s in self.steps if not self.visits.would_exceed(s.name, s.max_visits)]

    async def next_after(self, step: StepConfig, summary: str) -> RouteDecision:
        """Pick the transition after ``step`` finished successfully.

        Raises:
            RoutingError: If the decision function fails or names an unknown step.
        """
        if step.router == RouterMode.LLM:
            return await self._route_model_directed(step, summary)
        return self._route_sequential(step)

    def _route_sequential(self, step: StepConfig) -> RouteDecision:
        next_index = self._index[step.name] + 1
        if next_index >= len(self.steps):
            return RouteDecision(None, "last step completed", StopReason.COMPLETED)
        target = self.steps[next_index]
        self.visits.record(target.name)
        return RouteDecision(target, "sequential")

    async def _route_model_directed(self, step: StepConfig, summary: str) -> RouteDecision:
        available = self.available_steps()
        if not available:
            reason = "every step has reached its visit cap"
            logger.warning("Routing after '%s': %s", step.name, reason)
            return RouteDecision(None, reason, StopReason.VISIT_CAP)

        if self.decide is None:
            raise RoutingError(step.name, "no decision function configured")

        request = DecisionRequest(completed_step=step.name, summary=summary, available_steps=available)
        try:
            choice = await self.decide(request)
        except RoutingError:
            raise
        except Exception as exc:
            raise RoutingError(step.name, f"decision function raised {type(exc).__name__}: {exc}") from exc

        if choice.done:
            logger.info("Router after '%s' chose DONE: %s", step.name, choice.reason)
            return RouteDecision(None, choice.reason or "router reported completion", StopReason.ROUTER_DONE)

        target_index = self._index.get(choice.next_step or "")
        if target_index is None:
            raise RoutingError(step.name, f"decision named unknown step '{choice.next_step}'")
        target = self.steps[target_index]

        if self.visits.would_exceed(target.name, target.max_visits):
            reason = f"step '{target.name}' reached its visit cap of {target.max_visits}"
            logger.warning("Routing after '%s' forced to DONE: %s", step.name, reason)
            return RouteDecision(None, reason, StopReason.VISIT_CAP)

        self.visits.record(target.name)
        logger.info("Router after '%s' chose '%s': %s", step.name, target.name, choice.reason)
        return RouteDecision(target, choice.reason)

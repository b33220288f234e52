"""
executor.py - Execute one cycle against the agent.

CycleExecutor turns a cycle definition into a sequence of agent invocations
and one aggregated CycleOutcome. For each step the router visits it:

    denial gate -> session resolution -> permission resolution
    -> prompt rendering -> subprocess + stream aggregation
    -> circuit breaker / failure check -> router transition

Failure is fail-fast: the first failed step, breaker trip, closed gate or
broken session stops the cycle. The steps that ran are kept in the outcome,
and the stop reason says which safety net or failure ended it. Cancellation
is not a failure: the running subprocess is terminated and a partial outcome
with status ``canceled`` is returned for the caller to log.

Each call to ``execute`` creates its own SessionManager, StepRouter and
VisitTracker and discards them when it returns. Nothing is shared between
cycle executions, so two executions must never be given each other's state.

Usage:
    from cycleflow.runtime.executor import CycleExecutor

    executor = CycleExecutor(config, project_root)
    outcome = await executor.execute("coding", iteration=3, history=log.read_all())
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from cycleflow.config.cycle_config import (
    BrokenSessionPolicy,
    CycleConfig,
    FlowConfig,
    StepConfig,
    StepRouter as RouterMode,
)
from cycleflow.errors import InvocationError, RoutingError, SessionContinuationError

from .circuit_breaker import DenialGate, ToolErrorBreaker
from .context import build_context, inject_context
from .engines.async_utils import run_async_safely
from .engines.claude.cli import build_invocation
from .engines.claude.cli_runner import run_invocation
from .engines.claude.router import LLMStepDecider
from .engines.claude.stream import StreamAggregator, StreamEvent
from .engines.models import AgentInvocation, InvocationResult
from .permissions import resolve_permissions
from .router import Decider, StepRouter
from .session import InvocationMode, SessionManager
from .template import build_template_vars, expand_template
from .types import CycleOutcome, StepOutcome, StopReason, build_cycle_outcome

logger = logging.getLogger(__name__)

Runner = Callable[..., Awaitable[InvocationResult]]
EventCallback = Callable[[str, StreamEvent], None]


@dataclass
class PreparedCycle:
    """A cycle resolved against the config and history, ready to execute.

    Attributes:
        cycle: The cycle definition.
        steps: Steps to route over (the implicit step for legacy cycles).
        context: History block prepended to every prompt, if any.
    """

    cycle: CycleConfig
    steps: List[StepConfig]
    context: Optional[str]


class CycleExecutor:
    """Runs cycles from one FlowConfig inside one project."""

    def __init__(
        self,
        config: FlowConfig,
        project_root: Path,
        runner: Runner = run_invocation,
        decide: Optional[Decider] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.config = config
        self.project_root = Path(project_root)
        self.runner = runner
        self.decide = decide
        self.on_event = on_event

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare(self, cycle_name: str, history: Sequence[CycleOutcome] = ()) -> PreparedCycle:
        """Resolve a cycle by name.

        Raises:
            UnknownCycleError: If the cycle is not defined.
        """
        cycle = self.config.require_cycle(cycle_name)
        return PreparedCycle(
            cycle=cycle,
            steps=cycle.effective_steps(),
            context=build_context(cycle.context, history),
        )

    def render_prompt(
        self,
        prepared: PreparedCycle,
        step: StepConfig,
        iteration: int,
        max_iterations: Optional[int] = None,
    ) -> str:
        variables = build_template_vars(
            self.config.vars,
            self.project_root,
            cycle_name=prepared.cycle.name,
            step_name=step.name,
            iteration=iteration,
            max_iterations=max_iterations,
        )
        return inject_context(expand_template(step.prompt, variables), prepared.context)

    def build_step_invocation(
        self,
        prepared: PreparedCycle,
        step: StepConfig,
        mode: InvocationMode,
        prompt: str,
    ) -> AgentInvocation:
        cycle = prepared.cycle
        global_config = self.config.global_config
        step_perms = step.permissions if cycle.is_multi_step else None
        return build_invocation(
            prompt,
            resolve_permissions(global_config.permissions, cycle.permissions, step_perms),
            self.project_root,
            resume_id=mode.resume_id,
            max_turns=step.max_turns if step.max_turns is not None else cycle.max_turns,
            max_cost_usd=step.max_cost_usd if step.max_cost_usd is not None else cycle.max_cost_usd,
            program=global_config.agent_command,
        )

    def _decider(self, cancel_event: Optional[asyncio.Event]) -> Decider:
        if self.decide is not None:
            return self.decide
        global_config = self.config.global_config
        return LLMStepDecider(
            self.project_root,
            program=global_config.agent_command,
            runner=self.runner,
            cancel_event=cancel_event,
            timeout=global_config.step_timeout_secs,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        cycle_name: str,
        iteration: int,
        history: Sequence[CycleOutcome] = (),
        cancel_event: Optional[asyncio.Event] = None,
        max_iterations: Optional[int] = None,
    ) -> CycleOutcome:
        """Execute one cycle and aggregate its outcome.

        Execution-time failures never raise; they end the cycle and are
        reported through the outcome's status and stop_reason.

        Args:
            cycle_name: Cycle to run.
            iteration: Iteration number assigned by the run loop.
            history: Past outcomes, oldest first, for context injection.
            cancel_event: When set, the running step is terminated and no
                further step starts.
            max_iterations: Exposed to prompts as ``{{max_iterations}}``.

        Returns:
            The CycleOutcome, including every step that ran.

        Raises:
            UnknownCycleError: If the cycle is not defined.
        """
        prepared = self.prepare(cycle_name, history)
        cycle = prepared.cycle
        global_config = self.config.global_config

        sessions = SessionManager()
        router = StepRouter(prepared.steps, decide=self._decider(cancel_event))
        gate = DenialGate(global_config.max_permission_denials)
        outcomes: List[StepOutcome] = []
        stop_reason = StopReason.COMPLETED
        stop_detail = ""

        logger.info(
            "Starting cycle '%s' (iteration %d, %d step%s)",
            cycle.name,
            iteration,
            len(prepared.steps),
            "" if len(prepared.steps) == 1 else "s",
        )

        step: Optional[StepConfig] = router.start()
        while step is not None:
            if cancel_event is not None and cancel_event.is_set():
                stop_reason, stop_detail = StopReason.CANCELED, f"canceled before step '{step.name}'"
                break

            gate_reason = gate.check(sum(o.permission_denial_count for o in outcomes))
            if gate_reason is not None:
                stop_reason = StopReason.DENIAL_GATE
                stop_detail = f"refused to start step '{step.name}': {gate_reason}"
                break

            anomalies: List[str] = []
            try:
                mode = sessions.resolve(step.session)
            except SessionContinuationError as exc:
                if global_config.on_broken_session == BrokenSessionPolicy.ABORT:
                    logger.warning("Aborting cycle '%s': %s", cycle.name, exc)
                    stop_reason, stop_detail = StopReason.SESSION_CONTINUATION, str(exc)
                    break
                logger.warning("%s; starting a fresh session", exc)
                sessions.reset(exc.tag)
                anomalies.append(f"session '{exc.tag}' had no resumable handle; started a fresh session")
                mode = sessions.resolve(step.session)

            step_outcome, stop = await self._run_step(
                prepared, step, mode, iteration, max_iterations, cancel_event, anomalies
            )
            outcomes.append(step_outcome)
            sessions.record(step.session, step_outcome.session_id)
            if stop is not None:
                stop_reason, stop_detail = stop
                break

            try:
                decision = await router.next_after(step, step_outcome.summary)
            except RoutingError as exc:
                if cancel_event is not None and cancel_event.is_set():
                    stop_reason, stop_detail = StopReason.CANCELED, f"canceled while routing after '{step.name}'"
                    break
                logger.error("%s", exc)
                step_outcome.success = False
                step_outcome.anomalies.append(str(exc))
                stop_reason, stop_detail = StopReason.EXECUTION_FAILURE, str(exc)
                break

            if step.router == RouterMode.LLM:
                step_outcome.route_reason = decision.reason
            if decision.done:
                stop_reason = decision.stop_reason or StopReason.COMPLETED
                if stop_reason != StopReason.COMPLETED:
                    stop_detail = decision.reason
            step = decision.next_step

        outcome = build_cycle_outcome(
            cycle.name,
            iteration,
            outcomes,
            stop_reason,
            stop_detail,
            multi_step=cycle.is_multi_step,
        )
        log = logger.info if outcome.success else logger.warning
        log(
            "Cycle '%s' %s (%s) after %d step%s%s",
            cycle.name,
            outcome.status.value,
            stop_reason.value,
            len(outcomes),
            "" if len(outcomes) == 1 else "s",
            f": {stop_detail}" if stop_detail else "",
        )
        return outcome

    async def _run_step(
        self,
        prepared: PreparedCycle,
        step: StepConfig,
        mode: InvocationMode,
        iteration: int,
        max_iterations: Optional[int],
        cancel_event: Optional[asyncio.Event],
        anomalies: List[str],
    ) -> Tuple[StepOutcome, Optional[Tuple[StopReason, str]]]:
        """Run one step. Returns its outcome and, if the cycle must stop, why."""
        global_config = self.config.global_config
        prompt = self.render_prompt(prepared, step, iteration, max_iterations)
        invocation = self.build_step_invocation(prepared, step, mode, prompt)
        aggregator = StreamAggregator(breaker=ToolErrorBreaker(global_config.circuit_breaker_repeated))

        logger.info(
            "Step '%s': %s",
            step.name,
            f"resuming session '{mode.tag}' ({mode.resume_id})" if mode.is_continuation else "fresh session",
        )
        on_event = functools.partial(self.on_event, step.name) if self.on_event is not None else None

        try:
            result = await self.runner(
                invocation,
                aggregator,
                cancel_event=cancel_event,
                on_event=on_event,
                timeout=global_config.step_timeout_secs,
            )
        except InvocationError as exc:
            logger.error("Step '%s' could not start: %s", step.name, exc)
            failed = StepOutcome(
                name=step.name,
                session_tag=step.session,
                resumed=mode.is_continuation,
                anomalies=anomalies + [str(exc)],
            )
            return failed, (StopReason.INVOCATION_FAILURE, f"step '{step.name}': {exc}")

        outcome = aggregator.to_step_outcome(
            step.name, result, session_tag=step.session, resumed=mode.is_continuation
        )
        outcome.anomalies = anomalies + outcome.anomalies
        if step.session is not None and outcome.session_id is None:
            outcome.anomalies.append(f"session '{step.session}' produced no continuation handle")

        logger.info(
            "Step '%s' finished: success=%s turns=%d cost=$%.4f denials=%d files=%d",
            step.name,
            outcome.success,
            outcome.num_turns,
            outcome.total_cost_usd,
            outcome.permission_denial_count,
            len(outcome.files_touched),
        )
        for anomaly in outcome.anomalies:
            logger.warning("Step '%s': %s", step.name, anomaly)

        if result.canceled:
            return outcome, (StopReason.CANCELED, f"canceled during step '{step.name}'")
        if result.aborted:
            reason = aggregator.breaker.reason if aggregator.breaker is not None else "circuit breaker"
            return outcome, (StopReason.CIRCUIT_BREAKER, f"step '{step.name}': {reason}")
        if result.timed_out:
            return outcome, (
                StopReason.EXECUTION_FAILURE,
                f"step '{step.name}' exceeded the {global_config.step_timeout_secs:g}s timeout",
            )
        if not outcome.success:
            return outcome, (StopReason.EXECUTION_FAILURE, _failure_detail(step.name, result, aggregator))
        return outcome, None

    def execute_sync(self, cycle_name: str, iteration: int, **kwargs) -> CycleOutcome:
        """Synchronous wrapper around execute()."""
        return run_async_safely(self.execute(cycle_name, iteration, **kwargs))


def _failure_detail(step_name: str, result: InvocationResult, aggregator: StreamAggregator) -> str:
    if result.exit_code not in (0, None):
        detail = f"step '{step_name}' exited with status {result.exit_code}"
        stderr = result.stderr.strip()
        if stderr:
            detail += f": {stderr.splitlines()[-1][:200]}"
        return detail
    if aggregator.result is None:
        return f"step '{step_name}' produced no result event"
    return f"step '{step_name}' reported an error: {aggregator.summary[:200]}"

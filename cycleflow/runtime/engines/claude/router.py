"""
router.py - Model-directed step routing via the Claude CLI.

LLMStepDecider is the default decision function for steps with
``router: llm``. It runs the agent once with no tool permissions, shows it
the finished step's output and the steps that may still run, and asks for a
one-line JSON answer:

    {"next": "<step name or DONE>", "reason": "<one sentence>"}

Responses that are not clean JSON are still accepted when they contain the
bare token DONE or mention one of the offered step names.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from cycleflow.errors import RoutingError
from cycleflow.runtime.router import DONE_TOKEN, DecisionRequest, RouteChoice

from ..models import AgentInvocation, InvocationResult
from .cli import DEFAULT_AGENT_COMMAND, build_invocation
from .cli_runner import run_invocation
from .stream import StreamAggregator

logger = logging.getLogger(__name__)

FALLBACK_REASON = "Extracted from response text (JSON parse failed)"

ROUTER_PROMPT_TEMPLATE = """You are a step router for an automated coding pipeline.

The step "{completed_step}" just completed. Here is its output:

---
{result_text}
---

## Available Steps
{step_list}

## Instructions
Based on the step output, decide which step should execute next.
- If the work is complete and no more steps are needed, respond with "DONE".
- Otherwise, choose the most appropriate next step from the list above.

Respond with ONLY a JSON object on a single line, no other text:
{{"next": "<step_name or DONE>", "reason": "<one sentence explanation>"}}"""

Runner = Callable[..., Awaitable[InvocationResult]]


def build_router_prompt(completed_step: str, result_text: str, available_steps: Sequence[str]) -> str:
    step_list = "\n".join(f"- {name}" for name in available_steps)
    return ROUTER_PROMPT_TEMPLATE.format(
        completed_step=completed_step,
        result_text=result_text,
        step_list=step_list,
    )


def _parse_json_line(line: str, available_steps: Sequence[str]) -> Optional[RouteChoice]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    next_step = data.get("next")
    reason = data.get("reason")
    if not isinstance(next_step, str) or not isinstance(reason, str):
        return None
    if next_step.strip().upper() == DONE_TOKEN:
        return RouteChoice.finish(reason)
    if next_step in available_steps:
        return RouteChoice(next_step=next_step, reason=reason)
    return None


def _first_mentioned(response: str, available_steps: Sequence[str]) -> Optional[str]:
    best: Optional[str] = None
    best_pos = -1
    for name in available_steps:
        match = re.search(rf"(?<![\w-]){re.escape(name)}(?![\w-])", response)
        if match is None:
            continue
        pos = match.start()
        if best is None or pos < best_pos or (pos == best_pos and len(name) > len(best)):
            best, best_pos = name, pos
    return best


def parse_router_response(response: str, available_steps: Sequence[str]) -> Optional[RouteChoice]:
    """Extract a routing choice from the router's free-text response.

    Tries, in order: a JSON object on its own line, the bare token DONE,
    then the earliest mention of an offered step name.

    Returns:
        The RouteChoice, or None if nothing usable was found.
    """
    for line in response.splitlines():
        stripped = line.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            choice = _parse_json_line(stripped, available_steps)
            if choice is not None:
                return choice

    if re.search(rf"\b{DONE_TOKEN}\b", response):
        return RouteChoice.finish(FALLBACK_REASON)

    name = _first_mentioned(response, available_steps)
    if name is not None:
        return RouteChoice(next_step=name, reason=FALLBACK_REASON)
    return None


class LLMStepDecider:
    """Decision function that asks the agent which step runs next."""

    def __init__(
        self,
        project_root: Path,
        program: str = DEFAULT_AGENT_COMMAND,
        runner: Runner = run_invocation,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ):
        self.project_root = Path(project_root)
        self.program = program
        self.runner = runner
        self.cancel_event = cancel_event
        self.timeout = timeout

    def build_invocation(self, request: DecisionRequest) -> AgentInvocation:
        prompt = build_router_prompt(request.completed_step, request.summary, request.available_steps)
        return build_invocation(prompt, [], self.project_root, program=self.program)

    async def __call__(self, request: DecisionRequest) -> RouteChoice:
        aggregator = StreamAggregator()
        result = await self.runner(
            self.build_invocation(request),
            aggregator,
            cancel_event=self.cancel_event,
            timeout=self.timeout,
        )
        if not aggregator.succeeded(result.exit_code):
            detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "no result"
            raise RoutingError(request.completed_step, f"router invocation failed ({detail})")

        response = aggregator.summary
        logger.debug("Router response after '%s': %s", request.completed_step, response[:500])
        choice = parse_router_response(response, request.available_steps)
        if choice is None:
            raise RoutingError(
                request.completed_step,
                "could not parse a step choice from the router response",
            )
        return choice

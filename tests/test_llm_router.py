"""Tests for the agent-backed step decider and its response parsing."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from cycleflow.errors import RoutingError
from cycleflow.runtime.engines.claude.router import (
    FALLBACK_REASON,
    LLMStepDecider,
    build_router_prompt,
    parse_router_response,
)
from cycleflow.runtime.engines.models import InvocationResult
from cycleflow.runtime.router import DecisionRequest

STEPS = ["plan", "plan-review", "implement"]


class TestParseRouterResponse:
    def test_json_line(self) -> None:
        choice = parse_router_response('Thinking...\n{"next": "implement", "reason": "plan is solid"}\n', STEPS)
        assert choice.next_step == "implement"
        assert choice.reason == "plan is solid"

    def test_json_done_case_insensitive(self) -> None:
        choice = parse_router_response('{"next": "done", "reason": "finished"}', STEPS)
        assert choice.done
        assert choice.reason == "finished"

    def test_json_with_unavailable_step_falls_through(self) -> None:
        choice = parse_router_response('{"next": "deploy", "reason": "ship it"}\nor back to plan', STEPS)
        assert choice.next_step == "plan"
        assert choice.reason == FALLBACK_REASON

    def test_bare_done(self) -> None:
        choice = parse_router_response("Everything is merged. DONE", STEPS)
        assert choice.done
        assert choice.reason == FALLBACK_REASON

    def test_earliest_mention_wins(self) -> None:
        choice = parse_router_response("We should implement now; plan was fine.", STEPS)
        assert choice.next_step == "implement"

    def test_hyphenated_name_is_not_a_prefix_match(self) -> None:
        assert parse_router_response("go back to plan-review", STEPS).next_step == "plan-review"

    def test_nothing_usable(self) -> None:
        assert parse_router_response("I am not sure what to do.", STEPS) is None


class FakeRunner:
    def __init__(self, response_lines, exit_code: int = 0, stderr: str = ""):
        self.response_lines = response_lines
        self.exit_code = exit_code
        self.stderr = stderr
        self.calls = []

    async def __call__(self, invocation, aggregator, cancel_event=None, timeout=None):
        self.calls.append((invocation, timeout))
        for line in self.response_lines:
            aggregator.feed_line(line)
        return InvocationResult(exit_code=self.exit_code, stderr=self.stderr)


def _result(text: str) -> str:
    return json.dumps({"type": "result", "is_error": False, "result": text})


REQUEST = DecisionRequest(completed_step="plan-review", summary="Plan lacks tests", available_steps=STEPS)


class TestLLMStepDecider:
    def test_decides_from_agent_response(self, tmp_path: Path) -> None:
        runner = FakeRunner([_result('{"next": "plan", "reason": "add tests"}')])
        decider = LLMStepDecider(tmp_path, program="agent", runner=runner, timeout=30.0)

        choice = asyncio.run(decider(REQUEST))

        assert choice.next_step == "plan"
        invocation, timeout = runner.calls[0]
        assert invocation.program == "agent"
        assert "--allowedTools" not in invocation.args
        assert "Plan lacks tests" in invocation.args[1]
        assert timeout == 30.0

    def test_failed_invocation(self, tmp_path: Path) -> None:
        runner = FakeRunner([], exit_code=1, stderr="auth expired")
        with pytest.raises(RoutingError, match=r"router invocation failed \(auth expired\)"):
            asyncio.run(LLMStepDecider(tmp_path, runner=runner)(REQUEST))

    def test_unparseable_response(self, tmp_path: Path) -> None:
        runner = FakeRunner([_result("No idea.")])
        with pytest.raises(RoutingError, match="could not parse"):
            asyncio.run(LLMStepDecider(tmp_path, runner=runner)(REQUEST))


def test_router_prompt_lists_steps() -> None:
    prompt = build_router_prompt("plan-review", "output text", STEPS)
    assert '"plan-review" just completed' in prompt
    assert "- plan\n- plan-review\n- implement" in prompt
    assert '{"next": "<step_name or DONE>"' in prompt

"""Shared fixtures for cycleflow tests.

Provides builders for stream-json lines, a scripted agent runner that stands
in for the real subprocess, and small config helpers.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from cycleflow.config import FlowConfig, parse_config
from cycleflow.runtime.engines.claude.stream import StreamAggregator
from cycleflow.runtime.engines.models import AgentInvocation, InvocationResult


class Stream:
    """Builders for Claude stream-json lines."""

    @staticmethod
    def init(session_id: str = "sess-1", model: str = "claude-test") -> str:
        return json.dumps({"type": "system", "subtype": "init", "session_id": session_id, "model": model})

    @staticmethod
    def text(text: str) -> str:
        return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})

    @staticmethod
    def tool_use(tool_id: str, name: str, **tool_input: Any) -> str:
        block = {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}
        return json.dumps({"type": "assistant", "message": {"content": [block]}})

    @staticmethod
    def tool_result(tool_id: str, content: Any = "ok", is_error: bool = False) -> str:
        block = {"type": "tool_result", "tool_use_id": tool_id, "content": content, "is_error": is_error}
        return json.dumps({"type": "user", "message": {"content": [block]}})

    @staticmethod
    def result(
        text: str = "done",
        session_id: Optional[str] = "sess-1",
        num_turns: Any = 3,
        cost: Any = 0.05,
        is_error: bool = False,
        denials: Optional[List[Any]] = None,
    ) -> str:
        data: Dict[str, Any] = {
            "type": "result",
            "subtype": "success",
            "is_error": is_error,
            "result": text,
            "num_turns": num_turns,
            "total_cost_usd": cost,
            "duration_ms": 1200,
            "permission_denials": denials or [],
        }
        if session_id is not None:
            data["session_id"] = session_id
        return json.dumps(data)


@pytest.fixture
def stream() -> type:
    return Stream


class ScriptedRunner:
    """Runner stand-in that replays one scripted step per call.

    Each script entry is either a list of stdout lines (exit code 0), a
    ``(lines, exit_code)`` tuple, or an exception instance to raise.
    """

    def __init__(self, scripts: List[Any]):
        self.scripts = list(scripts)
        self.invocations: List[AgentInvocation] = []

    async def __call__(
        self,
        invocation: AgentInvocation,
        aggregator: StreamAggregator,
        cancel_event=None,
        on_event=None,
        on_stderr=None,
        timeout=None,
    ) -> InvocationResult:
        self.invocations.append(invocation)
        if not self.scripts:
            raise AssertionError(f"unexpected invocation: {invocation.display()}")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        lines, exit_code = script if isinstance(script, tuple) else (script, 0)

        for line in lines:
            for event in aggregator.feed_line(line):
                if on_event is not None:
                    on_event(event)
            if aggregator.breaker_tripped:
                return InvocationResult(exit_code=None, duration_secs=1.0, aborted=True)
        return InvocationResult(exit_code=exit_code, duration_secs=1.0)

    def prompts(self) -> List[str]:
        return [inv.args[inv.args.index("-p") + 1] for inv in self.invocations]


@pytest.fixture
def scripted_runner() -> Callable[[List[Any]], ScriptedRunner]:
    return ScriptedRunner


def step_lines(stream: type, summary: str, session_id: Optional[str] = "sess-1", **result_kwargs: Any) -> List[str]:
    """A minimal successful step: init, one text block, result."""
    lines = []
    if session_id is not None:
        lines.append(stream.init(session_id=session_id))
    lines.append(stream.text(summary))
    lines.append(stream.result(text=summary, session_id=session_id, **result_kwargs))
    return lines


@pytest.fixture
def make_step_lines(stream: type) -> Callable[..., List[str]]:
    def _make(summary: str, session_id: Optional[str] = "sess-1", **result_kwargs: Any) -> List[str]:
        return step_lines(stream, summary, session_id=session_id, **result_kwargs)

    return _make


@pytest.fixture
def make_config() -> Callable[..., FlowConfig]:
    """Build a FlowConfig from keyword sections."""

    def _make(cycles: List[Dict[str, Any]], **global_overrides: Any) -> FlowConfig:
        data: Dict[str, Any] = {"global": {"permissions": ["Read"], **global_overrides}, "cycles": cycles}
        return parse_config(data, source="<test>")

    return _make


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root

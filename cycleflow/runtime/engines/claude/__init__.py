"""
claude/ - Claude CLI engine.

Modules:
- cli.py: build the ``claude -p ... --output-format stream-json`` invocation
- stream.py: parse stream-json events and aggregate them into a StepOutcome
- cli_runner.py: run the subprocess, draining stdout and stderr concurrently
- router.py: ask the agent which step runs next
"""

from .cli import build_invocation
from .cli_runner import run_invocation
from .router import LLMStepDecider, build_router_prompt, parse_router_response
from .stream import StreamAggregator, parse_line

__all__ = [
    "LLMStepDecider",
    "StreamAggregator",
    "build_invocation",
    "build_router_prompt",
    "parse_line",
    "parse_router_response",
    "run_invocation",
]

"""
cli.py - Build Claude CLI invocations.

The agent is started as:

    claude -p <prompt> --output-format stream-json --verbose
           [--resume <session_id>] [--max-turns N] [--max-budget-usd X]
           [--allowedTools <perm> <perm> ...]

``--allowedTools`` comes last because it consumes every following argument.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from ..models import AgentInvocation

DEFAULT_AGENT_COMMAND = "claude"


def _format_cost(value: float) -> str:
    text = f"{value:.4f}".rstrip("0").rstrip(".")
    return text or "0"


def build_invocation(
    prompt: str,
    allowed_tools: Sequence[str],
    cwd: Path,
    resume_id: Optional[str] = None,
    max_turns: Optional[int] = None,
    max_cost_usd: Optional[float] = None,
    program: str = DEFAULT_AGENT_COMMAND,
) -> AgentInvocation:
    """Build the subprocess invocation for one agent step.

    Args:
        prompt: Fully expanded prompt text.
        allowed_tools: Resolved permissions, one ``--allowedTools`` value each.
        cwd: Working directory (the project root).
        resume_id: Session id to continue, if the step resumes a session.
        max_turns: Turn limit, if any.
        max_cost_usd: Spend limit in USD, if any.
        program: Agent executable.

    Returns:
        The AgentInvocation to hand to the runner.
    """
    args: List[str] = ["-p", prompt, "--output-format", "stream-json", "--verbose"]

    if resume_id:
        args.extend(["--resume", resume_id])
    if max_turns is not None:
        args.extend(["--max-turns", str(max_turns)])
    if max_cost_usd is not None:
        args.extend(["--max-budget-usd", _format_cost(max_cost_usd)])

    tools = list(allowed_tools)
    if tools:
        args.append("--allowedTools")
        args.extend(tools)

    return AgentInvocation(
        program=program,
        args=args,
        cwd=Path(cwd),
        resume_id=resume_id,
        allowed_tools=tools,
    )

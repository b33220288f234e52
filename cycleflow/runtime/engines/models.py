"""
models.py - Data models shared by agent engines.

- AgentInvocation: the exact subprocess to start for one step
- InvocationResult: how that subprocess ended

These are pure data structures with no dependencies on engine implementations.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


@dataclass(frozen=True)
class AgentInvocation:
    """A fully-built agent subprocess invocation.

    Attributes:
        program: Executable to run (the agent CLI).
        args: Arguments, in order, excluding the program itself.
        cwd: Working directory (the project root).
        resume_id: Continuation handle passed via ``--resume``, if any.
        allowed_tools: Resolved permissions passed via ``--allowedTools``.
    """

    program: str
    args: List[str]
    cwd: Path
    resume_id: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=list)

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        """Shell-quoted command line for logs."""
        return " ".join(shlex.quote(a) for a in self.argv)


@dataclass
class InvocationResult:
    """How an agent subprocess ended.

    Attributes:
        exit_code: Process exit status; None if it had to be killed.
        stderr: Tail of the diagnostic channel, for error reporting.
        duration_secs: Wall-clock time from spawn to exit.
        canceled: The run was interrupted by the caller.
        aborted: The circuit breaker killed the subprocess.
        timed_out: The step exceeded its timeout and was killed.
    """

    exit_code: Optional[int]
    stderr: str = ""
    duration_secs: float = 0.0
    canceled: bool = False
    aborted: bool = False
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not (self.canceled or self.aborted or self.timed_out)

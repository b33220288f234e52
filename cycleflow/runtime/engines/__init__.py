"""
engines/ - Agent subprocess backends.

Models:
- AgentInvocation: the subprocess to start for one step
- InvocationResult: how it ended

Engines:
- claude/: Claude CLI invocation, stream-json parsing and model-directed routing
"""

from .async_utils import run_async_safely
from .models import AgentInvocation, InvocationResult

__all__ = ["AgentInvocation", "InvocationResult", "run_async_safely"]

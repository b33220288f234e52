"""
errors.py - Exception types shared across cycleflow.

Configuration problems are fatal to the whole run and are raised before
any subprocess starts. Execution-time errors are caught by the cycle
executor and folded into a failed CycleOutcome with a stop reason.
"""

from __future__ import annotations

from typing import List, Optional


class CycleflowError(Exception):
    """Base exception for cycleflow errors."""

    pass


class ConfigError(CycleflowError):
    """Raised when cycles.yaml cannot be read or fails validation."""

    def __init__(self, errors: List[str], path: Optional[str] = None):
        self.errors = errors
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"Invalid configuration{where}: {'; '.join(errors)}")


class UnknownCycleError(CycleflowError):
    """Raised when a cycle name is not defined in the configuration."""

    def __init__(self, name: str, available: List[str]):
        self.name = name
        self.available = available
        super().__init__(
            f"Unknown cycle '{name}'. Available cycles: {', '.join(available) or '(none)'}"
        )


class InvocationError(CycleflowError):
    """Raised when the agent subprocess cannot be started."""

    pass


class RoutingError(CycleflowError):
    """Raised when a model-directed routing decision cannot be obtained."""

    def __init__(self, step_name: str, message: str):
        self.step_name = step_name
        super().__init__(f"Routing after step '{step_name}' failed: {message}")


class SessionContinuationError(CycleflowError):
    """Raised when a session tag was used but left no resumable handle.

    This is distinct from a tag that has never been used: continuing
    such a tag as a fresh session would silently drop prior context.
    """

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(
            f"Session '{tag}' has no resumable handle: a previous step with this tag "
            "ended without reporting a session id"
        )


class OutcomeLogError(CycleflowError):
    """Raised when the outcome log directory or file cannot be used."""

    pass

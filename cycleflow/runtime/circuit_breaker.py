"""
circuit_breaker.py - Safety nets for unattended runs.

Two independent thresholds bound cost and runaway behavior:

- ToolErrorBreaker trips inside a step when the agent produces too many
  consecutive erroring tool results. The runner kills the subprocess.
- DenialGate is checked before a step (and between cycles) and refuses to
  continue once cumulative permission denials exceed the configured maximum.

Both produce a reason string that ends up in the CycleOutcome's stop_detail,
so a trip is distinguishable from an ordinary step failure.
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ToolErrorBreaker:
    """Counts consecutive tool-result errors within one step.

    Only tool results move the counter: an error increments it and a
    successful result resets it. A threshold of 0 disables the breaker.
    """

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.consecutive_errors = 0
        self.total_errors = 0
        self.tripped = False

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    def observe(self, is_error: bool) -> bool:
        """Record one tool result. Returns True on the result that trips the breaker."""
        if not is_error:
            self.consecutive_errors = 0
            return False

        self.consecutive_errors += 1
        self.total_errors += 1
        if self.enabled and not self.tripped and self.consecutive_errors >= self.threshold:
            self.tripped = True
            logger.warning(
                "Circuit breaker tripped after %d consecutive tool errors", self.consecutive_errors
            )
            return True
        return False

    @property
    def reason(self) -> str:
        return f"{self.consecutive_errors} consecutive tool errors (threshold {self.threshold})"


class DenialGate:
    """Refuses further work once cumulative permission denials exceed a maximum."""

    def __init__(self, max_denials: int):
        self.max_denials = max_denials

    def check(self, total_denials: int) -> Optional[str]:
        """Return a stop reason if ``total_denials`` exceeds the maximum, else None."""
        if total_denials > self.max_denials:
            reason = f"{total_denials} permission denials exceed the maximum of {self.max_denials}"
            logger.warning("Denial gate closed: %s", reason)
            return reason
        return None

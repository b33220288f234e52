"""
session.py - Session tag to continuation handle mapping.

Steps that share a session tag continue the same agent conversation. The
first step with a tag starts fresh; once it reports a session id, later steps
with the same tag resume it with ``--resume <id>``.

A tag moves through three states:

    UNSEEN  -> never used in this cycle execution
    ACTIVE  -> used, and a handle is available for continuation
    BROKEN  -> used, but the step ended without reporting a handle

BROKEN is deliberately separate from UNSEEN. Treating a crashed continuation
as a fresh start would silently drop the context the tag was meant to carry,
so ``resolve`` raises SessionContinuationError and the caller picks a policy.

A SessionManager is owned by exactly one cycle execution. It is created when
the execution starts and discarded when it ends; it is never shared between
concurrent executions or carried across iterations, so it takes no locks.

Usage:
    from cycleflow.runtime.session import SessionManager

    sessions = SessionManager()
    mode = sessions.resolve(step.session)
    ...
    sessions.record(step.session, outcome.session_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from cycleflow.errors import SessionContinuationError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNSEEN = "unseen"
    ACTIVE = "active"
    BROKEN = "broken"


@dataclass(frozen=True)
class InvocationMode:
    """How a step should be invoked with respect to its session.

    Attributes:
        tag: Session tag of the step, or None for an untagged step.
        resume_id: Continuation handle to resume, or None for a fresh session.
    """

    tag: Optional[str] = None
    resume_id: Optional[str] = None

    @property
    def is_continuation(self) -> bool:
        return self.resume_id is not None


FRESH = InvocationMode()


class SessionManager:
    """Maps session tags to continuation handles for one cycle execution."""

    def __init__(self) -> None:
        self._handles: Dict[str, Optional[str]] = {}

    def state(self, tag: str) -> SessionState:
        if tag not in self._handles:
            return SessionState.UNSEEN
        if self._handles[tag] is None:
            return SessionState.BROKEN
        return SessionState.ACTIVE

    def resolve(self, tag: Optional[str]) -> InvocationMode:
        """Decide whether a step starts fresh or continues its tag's session.

        Raises:
            SessionContinuationError: If the tag was used before but left no
                resumable handle.
        """
        if tag is None:
            return FRESH

        state = self.state(tag)
        if state == SessionState.UNSEEN:
            logger.debug("Session '%s' unseen, starting fresh", tag)
            return InvocationMode(tag=tag)
        if state == SessionState.BROKEN:
            raise SessionContinuationError(tag)

        handle = self._handles[tag]
        logger.debug("Session '%s' active, resuming %s", tag, handle)
        return InvocationMode(tag=tag, resume_id=handle)

    def record(self, tag: Optional[str], session_id: Optional[str]) -> None:
        """Record the outcome of a step that ran under ``tag``.

        A missing session id marks the tag BROKEN, even if it was ACTIVE
        before: the conversation the handle pointed to may have moved on.
        """
        if tag is None:
            return
        if session_id:
            self._handles[tag] = session_id
        else:
            logger.warning("Session '%s' produced no continuation handle", tag)
            self._handles[tag] = None

    def reset(self, tag: str) -> None:
        """Forget a tag so the next step using it starts a fresh session."""
        self._handles.pop(tag, None)

    def handle(self, tag: str) -> Optional[str]:
        return self._handles.get(tag)

    def __len__(self) -> int:
        return len(self._handles)

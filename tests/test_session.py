"""Tests for the session tag -> continuation handle mapping."""

from __future__ import annotations

import pytest

from cycleflow.errors import SessionContinuationError
from cycleflow.runtime.session import SessionManager, SessionState


class TestSessionManager:
    """Session continuity within one cycle execution."""

    def test_untagged_steps_always_fresh(self) -> None:
        sessions = SessionManager()
        sessions.record(None, "sess-1")
        mode = sessions.resolve(None)
        assert not mode.is_continuation
        assert mode.tag is None
        assert len(sessions) == 0

    def test_shared_tag_continues_and_untagged_stays_fresh(self) -> None:
        """plan[architect] -> review[no tag] -> implement[architect]."""
        sessions = SessionManager()

        plan = sessions.resolve("architect")
        assert not plan.is_continuation
        sessions.record("architect", "sess-abc")

        review = sessions.resolve(None)
        assert not review.is_continuation
        sessions.record(None, "sess-review")

        implement = sessions.resolve("architect")
        assert implement.is_continuation
        assert implement.resume_id == "sess-abc"

    def test_different_tags_are_independent(self) -> None:
        sessions = SessionManager()
        sessions.record("architect", "sess-a")
        assert not sessions.resolve("reviewer").is_continuation
        assert sessions.state("reviewer") == SessionState.UNSEEN

    def test_latest_handle_wins(self) -> None:
        sessions = SessionManager()
        sessions.record("architect", "sess-1")
        sessions.record("architect", "sess-2")
        assert sessions.resolve("architect").resume_id == "sess-2"

    def test_missing_handle_is_distinct_from_unseen(self) -> None:
        sessions = SessionManager()
        sessions.record("architect", None)

        assert sessions.state("architect") == SessionState.BROKEN
        with pytest.raises(SessionContinuationError) as exc_info:
            sessions.resolve("architect")
        assert exc_info.value.tag == "architect"

    def test_active_tag_breaks_when_continuation_loses_handle(self) -> None:
        sessions = SessionManager()
        sessions.record("architect", "sess-1")
        sessions.record("architect", "")
        with pytest.raises(SessionContinuationError):
            sessions.resolve("architect")

    def test_reset_allows_fresh_start(self) -> None:
        sessions = SessionManager()
        sessions.record("architect", None)
        sessions.reset("architect")

        assert sessions.state("architect") == SessionState.UNSEEN
        assert not sessions.resolve("architect").is_continuation

    def test_managers_do_not_share_state(self) -> None:
        first = SessionManager()
        first.record("architect", "sess-1")
        second = SessionManager()
        assert second.state("architect") == SessionState.UNSEEN

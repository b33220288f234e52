"""Tests for the append-only outcome log."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from cycleflow.errors import OutcomeLogError
from cycleflow.runtime import storage
from cycleflow.runtime.storage import LOG_FILE, OutcomeLog, validate_outcome_record
from cycleflow.runtime.types import CycleStatus, StepOutcome, StopReason, build_cycle_outcome


def _outcome(iteration: int, cycle: str = "coding", multi_step: bool = False):
    steps = [StepOutcome(name=cycle, summary=f"run {iteration}", success=True, num_turns=2, total_cost_usd=0.1)]
    return build_cycle_outcome(cycle, iteration, steps, StopReason.COMPLETED, multi_step=multi_step)


class TestOutcomeLog:
    def test_empty_log(self, tmp_path: Path) -> None:
        log = OutcomeLog(tmp_path / ".cycleflow")
        assert log.read_all() == []
        assert log.last_iteration() == 0

    def test_append_creates_directory_and_reads_back(self, tmp_path: Path) -> None:
        log = OutcomeLog(tmp_path / "nested" / ".cycleflow")
        log.append(_outcome(1))
        log.append(_outcome(2, "feature", multi_step=True))

        assert log.path == tmp_path / "nested" / ".cycleflow" / LOG_FILE
        history = log.read_all()
        assert [(o.iteration, o.cycle) for o in history] == [(1, "coding"), (2, "feature")]
        assert history[0].steps is None
        assert history[1].steps[0].summary == "run 2"
        assert log.last_iteration() == 2

    def test_one_record_per_line(self, tmp_path: Path) -> None:
        log = OutcomeLog(tmp_path)
        log.append(_outcome(1))
        log.append(_outcome(2))
        lines = log.path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert "steps" not in json.loads(lines[0])

    def test_skips_bad_lines(self, tmp_path: Path, caplog) -> None:
        log = OutcomeLog(tmp_path)
        log.append(_outcome(1))
        with open(log.path, "a", encoding="utf-8") as f:
            f.write("not json\n")
            f.write("[1, 2]\n")
            f.write(json.dumps({"iteration": 0, "cycle": "x", "timestamp": "t", "outcome": ""}) + "\n")
            f.write("\n")
        log.append(_outcome(3))

        with caplog.at_level(logging.WARNING, logger="cycleflow.runtime.storage"):
            history = log.read_all()

        assert [o.iteration for o in history] == [1, 3]
        assert len(caplog.records) == 3

    def test_skips_undecodable_line(self, tmp_path: Path, caplog) -> None:
        log = OutcomeLog(tmp_path)
        log.append(_outcome(1))
        with open(log.path, "ab") as f:
            f.write(b'{"iteration": 2, "cycle": "\xff\xfe"}\n')
        log.append(_outcome(3))

        with caplog.at_level(logging.WARNING, logger="cycleflow.runtime.storage"):
            history = log.read_all()

        assert [o.iteration for o in history] == [1, 3]
        assert log.last_iteration() == 3
        assert "undecodable line 2" in caplog.text

    def test_reads_legacy_record(self, tmp_path: Path) -> None:
        log = OutcomeLog(tmp_path)
        tmp_path.joinpath(LOG_FILE).write_text(
            json.dumps(
                {
                    "iteration": 4,
                    "cycle": "coding",
                    "timestamp": "2025-01-02T03:04:05Z",
                    "outcome": "Implemented X",
                    "files_changed": ["a.py"],
                    "tests_passed": 12,
                    "duration_secs": 30.5,
                    "num_turns": 8,
                    "total_cost_usd": 0.4,
                }
            )
            + "\n",
            encoding="utf-8",
        )

        (outcome,) = log.read_all()
        assert outcome.status == CycleStatus.SUCCEEDED
        assert outcome.stop_reason == StopReason.COMPLETED
        assert outcome.steps is None
        assert outcome.timestamp.year == 2025
        assert outcome.tests_passed == 12

    def test_write_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        log = OutcomeLog(blocker / "logs")
        with pytest.raises(OutcomeLogError):
            log.append(_outcome(1))


class TestValidateOutcomeRecord:
    def test_validator_is_built_once(self) -> None:
        validate_outcome_record({"iteration": 1, "cycle": "c", "timestamp": "t", "outcome": "o"})
        assert storage._outcome_validator() is storage._outcome_validator()

    def test_valid(self) -> None:
        assert validate_outcome_record({"iteration": 1, "cycle": "c", "timestamp": "t", "outcome": "o"}) == []

    def test_missing_and_bad_fields(self) -> None:
        errors = validate_outcome_record({"iteration": 1, "cycle": "c", "timestamp": "t", "status": "exploded"})
        assert any("outcome" in e for e in errors)
        assert any(e.startswith("status:") for e in errors)

    def test_step_requires_name_and_success(self) -> None:
        record = {"iteration": 1, "cycle": "c", "timestamp": "t", "outcome": "o", "steps": [{"name": "plan"}]}
        errors = validate_outcome_record(record)
        assert errors and errors[0].startswith("steps/0")

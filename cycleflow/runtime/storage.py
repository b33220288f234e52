"""
storage.py - Append-only outcome log.

Every cycle execution appends one CycleOutcome record to ``log.jsonl`` in the
log directory (``.cycleflow/`` under the project by default):

    .cycleflow/
        log.jsonl       # newline-delimited CycleOutcome records

Records are validated against ``schemas/cycle_outcome.schema.json`` when read
back. Lines that are not JSON or fail validation are skipped with a warning;
one bad line never hides the rest of the history.

Usage:
    from cycleflow.runtime.storage import OutcomeLog

    log = OutcomeLog(project_dir / ".cycleflow")
    log.append(outcome)
    history = log.read_all()
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from cycleflow.errors import OutcomeLogError

from .types import CycleOutcome, cycle_outcome_from_dict, cycle_outcome_to_dict

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = ".cycleflow"
LOG_FILE = "log.jsonl"

SCHEMA_PATH = Path(__file__).parent.parent / "schemas" / "cycle_outcome.schema.json"

_OUTCOME_SCHEMA: Optional[Dict[str, Any]] = None
_OUTCOME_VALIDATOR: Optional[jsonschema.Draft7Validator] = None


def _load_outcome_schema() -> Dict[str, Any]:
    """Load the outcome record schema, caching result."""
    global _OUTCOME_SCHEMA
    if _OUTCOME_SCHEMA is None:
        with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
            _OUTCOME_SCHEMA = json.load(f)
    return _OUTCOME_SCHEMA


def _outcome_validator() -> jsonschema.Draft7Validator:
    """Build the record validator once."""
    global _OUTCOME_VALIDATOR
    if _OUTCOME_VALIDATOR is None:
        _OUTCOME_VALIDATOR = jsonschema.Draft7Validator(_load_outcome_schema())
    return _OUTCOME_VALIDATOR


def validate_outcome_record(data: Dict[str, Any]) -> List[str]:
    """Validate one log record against the schema.

    Returns:
        Validation error messages; empty when the record is valid.
    """
    validator = _outcome_validator()
    return [
        f"{'/'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
        for error in validator.iter_errors(data)
    ]


class OutcomeLog:
    """The outcome history of one project."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self.path = self.log_dir / LOG_FILE

    def append(self, outcome: CycleOutcome) -> None:
        """Append one record.

        Raises:
            OutcomeLogError: If the directory or file cannot be written.
        """
        line = json.dumps(cycle_outcome_to_dict(outcome), ensure_ascii=False)
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            raise OutcomeLogError(f"Failed to append to {self.path}: {e}") from e
        logger.debug("Logged iteration %d (%s) to %s", outcome.iteration, outcome.cycle, self.path)

    def read_all(self) -> List[CycleOutcome]:
        """Read every valid record, oldest first.

        Raises:
            OutcomeLogError: If the file exists but cannot be read.
        """
        if not self.path.exists():
            return []

        outcomes: List[CycleOutcome] = []
        try:
            with open(self.path, "rb") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    outcome = self._parse_line(line, lineno)
                    if outcome is not None:
                        outcomes.append(outcome)
        except OSError as e:
            raise OutcomeLogError(f"Failed to read {self.path}: {e}") from e
        return outcomes

    def _parse_line(self, raw: bytes, lineno: int) -> Optional[CycleOutcome]:
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("Skipping undecodable line %d in %s: %s", lineno, self.path, e)
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed line %d in %s: %s", lineno, self.path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Skipping line %d in %s: not a JSON object", lineno, self.path)
            return None

        errors = validate_outcome_record(data)
        if errors:
            logger.warning("Skipping invalid record on line %d in %s: %s", lineno, self.path, "; ".join(errors))
            return None

        try:
            return cycle_outcome_from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable record on line %d in %s: %s", lineno, self.path, e)
            return None

    def last_iteration(self) -> int:
        """Highest logged iteration number, or 0 for an empty log."""
        return max((o.iteration for o in self.read_all()), default=0)

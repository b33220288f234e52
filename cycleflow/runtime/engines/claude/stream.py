"""
stream.py - Parse and aggregate Claude ``--output-format stream-json`` output.

Each stdout line is one JSON record tagged with ``type``:

- ``system`` (subtype ``init``): session id and model
- ``assistant``: message content blocks, ``text`` or ``tool_use``
- ``user``: message content blocks, ``tool_result``
- ``result``: the terminal record with turns, cost, denials and session id

parse_line turns one line into zero or more StreamEvents (an assistant
message can carry several content blocks). StreamAggregator folds events, in
arrival order, into the running totals that become a StepOutcome.

A line that is not JSON, or has no ``type``, is skipped and counted; it never
fails the invocation. Records with an unrecognised ``type`` parse as
UnknownEvent and are ignored for accounting.

Usage:
    from cycleflow.runtime.engines.claude.stream import StreamAggregator

    aggregator = StreamAggregator(breaker=ToolErrorBreaker(5))
    for line in stdout_lines:
        aggregator.feed_line(line)
        if aggregator.breaker_tripped:
            break
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from cycleflow.runtime.circuit_breaker import ToolErrorBreaker
from cycleflow.runtime.engines.models import InvocationResult
from cycleflow.runtime.types import StepOutcome

logger = logging.getLogger(__name__)

# Tools that edit or write files, and the input key that names the file.
FILE_WRITING_TOOLS: Dict[str, str] = {
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "Write": "file_path",
    "NotebookEdit": "notebook_path",
}

_TESTS_PASSED_RE = re.compile(r"\b(\d+) passed\b")
_DENIAL_RE = re.compile(r"requested permissions to use (?P<tool>[A-Za-z0-9]+)", re.IGNORECASE)

MAX_SUMMARY_CHARS = 2000


# =============================================================================
# Events
# =============================================================================


@dataclass
class SystemInit:
    session_id: str = ""
    model: str = "unknown"


@dataclass
class AssistantText:
    text: str


@dataclass
class ToolUse:
    tool_use_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    tool_use_id: str
    is_error: bool
    content: str


@dataclass
class ResultEvent:
    """The terminal record of one invocation.

    Numeric fields are already clamped to be non-negative; anything that had
    to be corrected is listed in ``anomalies``.
    """

    is_error: bool = False
    result_text: str = ""
    num_turns: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    session_id: Optional[str] = None
    permission_denials: List[str] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)


@dataclass
class UnknownEvent:
    event_type: str


StreamEvent = Union[SystemInit, AssistantText, ToolUse, ToolResult, ResultEvent, UnknownEvent]


# =============================================================================
# Parsing
# =============================================================================


def render_capability(tool_name: str, tool_input: Any) -> str:
    """Render a tool call as a capability string like ``Bash(rm -rf build)``."""
    if not isinstance(tool_input, dict):
        return tool_name
    for key in ("command", "file_path", "notebook_path", "path", "pattern", "url"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return f"{tool_name}({value})"
    return tool_name


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return ""


def _non_negative(value: Any, label: str, anomalies: List[str], integer: bool) -> Union[int, float]:
    zero: Union[int, float] = 0 if integer else 0.0
    if value is None:
        return zero
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        anomalies.append(f"non-numeric {label} {value!r} treated as 0")
        return zero
    if value < 0:
        anomalies.append(f"negative {label} {value} treated as 0")
        return zero
    return int(value) if integer else float(value)


def _parse_denials(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    denials = []
    for item in raw:
        if isinstance(item, str) and item:
            denials.append(item)
        elif isinstance(item, dict) and item.get("tool_name"):
            denials.append(render_capability(str(item["tool_name"]), item.get("tool_input")))
    return denials


def _parse_result(data: Dict[str, Any]) -> ResultEvent:
    anomalies: List[str] = []
    result_text = data.get("result")
    session_id = data.get("session_id")
    return ResultEvent(
        is_error=bool(data.get("is_error", False)),
        result_text=result_text if isinstance(result_text, str) else "",
        num_turns=int(_non_negative(data.get("num_turns"), "num_turns", anomalies, integer=True)),
        total_cost_usd=float(
            _non_negative(data.get("total_cost_usd"), "total_cost_usd", anomalies, integer=False)
        ),
        duration_ms=int(_non_negative(data.get("duration_ms"), "duration_ms", anomalies, integer=True)),
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        permission_denials=_parse_denials(data.get("permission_denials")),
        anomalies=anomalies,
    )


def _message_blocks(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = data.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _parse_assistant(data: Dict[str, Any]) -> List[StreamEvent]:
    events: List[StreamEvent] = []
    for block in _message_blocks(data):
        block_type = block.get("type")
        if block_type == "text" and isinstance(block.get("text"), str):
            events.append(AssistantText(text=block["text"]))
        elif block_type == "tool_use":
            tool_input = block.get("input")
            events.append(
                ToolUse(
                    tool_use_id=str(block.get("id", "")),
                    name=str(block.get("name", "unknown")),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
    return events


def _parse_user(data: Dict[str, Any]) -> List[StreamEvent]:
    events: List[StreamEvent] = []
    for block in _message_blocks(data):
        if block.get("type") == "tool_result":
            events.append(
                ToolResult(
                    tool_use_id=str(block.get("tool_use_id", "")),
                    is_error=bool(block.get("is_error", False)),
                    content=_content_text(block.get("content")),
                )
            )
    return events


def parse_line(line: str) -> Optional[List[StreamEvent]]:
    """Parse one stdout line.

    Returns:
        The events on the line (possibly empty), or None if the line is
        malformed: not JSON, not an object, or missing a string ``type``.
    """
    line = line.strip()
    if not line:
        return []

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    event_type = data.get("type")
    if not isinstance(event_type, str):
        return None

    if event_type == "system":
        if data.get("subtype", "init") != "init":
            return [UnknownEvent(event_type=f"system:{data.get('subtype')}")]
        session_id = data.get("session_id")
        return [
            SystemInit(
                session_id=session_id if isinstance(session_id, str) else "",
                model=str(data.get("model") or "unknown"),
            )
        ]
    if event_type == "assistant":
        return _parse_assistant(data)
    if event_type == "user":
        return _parse_user(data)
    if event_type == "result":
        return [_parse_result(data)]
    return [UnknownEvent(event_type=event_type)]


# =============================================================================
# Aggregation
# =============================================================================


class StreamAggregator:
    """Fold stream events into the running outcome of one invocation.

    Events must be fed in the order they arrive on stdout: tool results are
    correlated with earlier tool invocations by id.
    """

    def __init__(self, breaker: Optional[ToolErrorBreaker] = None):
        self.breaker = breaker
        self.session_id: Optional[str] = None
        self.model: Optional[str] = None
        self.text_fragments: List[str] = []
        self.files_touched: List[str] = []
        self.tests_passed = 0
        self.tool_results = 0
        self.tool_errors = 0
        self.running_denials: List[str] = []
        self.malformed_lines = 0
        self.anomalies: List[str] = []
        self.result: Optional[ResultEvent] = None
        self.result_count = 0
        self._tool_uses: Dict[str, ToolUse] = {}

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def feed_line(self, line: str) -> List[StreamEvent]:
        """Parse and apply one stdout line. Malformed lines are counted and skipped."""
        events = parse_line(line)
        if events is None:
            self.skip_line(line[:200])
            return []
        for event in events:
            self.feed(event)
        return events

    def skip_line(self, detail: str) -> None:
        """Count a stdout line that could not be used."""
        self.malformed_lines += 1
        logger.debug("Skipping malformed stream line: %s", detail)

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, SystemInit):
            if event.session_id:
                self.session_id = event.session_id
            self.model = event.model
        elif isinstance(event, AssistantText):
            self.text_fragments.append(event.text)
        elif isinstance(event, ToolUse):
            self._on_tool_use(event)
        elif isinstance(event, ToolResult):
            self._on_tool_result(event)
        elif isinstance(event, ResultEvent):
            self._on_result(event)
        else:
            logger.debug("Ignoring stream event of type %s", event.event_type)

    def _on_tool_use(self, event: ToolUse) -> None:
        if event.tool_use_id:
            self._tool_uses[event.tool_use_id] = event
        key = FILE_WRITING_TOOLS.get(event.name)
        if key is None:
            return
        path = event.input.get(key)
        if isinstance(path, str) and path and path not in self.files_touched:
            self.files_touched.append(path)

    def _on_tool_result(self, event: ToolResult) -> None:
        self.tool_results += 1
        if event.is_error:
            self.tool_errors += 1
            match = _DENIAL_RE.search(event.content)
            if match:
                tool_use = self._tool_uses.get(event.tool_use_id)
                if tool_use is not None:
                    denial = render_capability(tool_use.name, tool_use.input)
                else:
                    denial = match.group("tool")
                self.running_denials.append(denial)
                logger.debug("Permission denied: %s", denial)
        else:
            for count in _TESTS_PASSED_RE.findall(event.content):
                self.tests_passed += int(count)

        if self.breaker is not None:
            self.breaker.observe(event.is_error)

    def _on_result(self, event: ResultEvent) -> None:
        self.result_count += 1
        if self.result_count > 1:
            self.anomalies.append("multiple result events; using the last one")
        for anomaly in event.anomalies:
            logger.warning("Stream anomaly: %s", anomaly)
            self.anomalies.append(anomaly)
        if event.session_id:
            self.session_id = event.session_id
        self.result = event

    # ------------------------------------------------------------------
    # Running outcome
    # ------------------------------------------------------------------

    @property
    def breaker_tripped(self) -> bool:
        return self.breaker is not None and self.breaker.tripped

    @property
    def permission_denials(self) -> List[str]:
        """Denials for the step; the terminal record's list wins when non-empty."""
        if self.result is not None and self.result.permission_denials:
            return list(self.result.permission_denials)
        return list(self.running_denials)

    @property
    def num_turns(self) -> int:
        return self.result.num_turns if self.result else 0

    @property
    def total_cost_usd(self) -> float:
        return self.result.total_cost_usd if self.result else 0.0

    @property
    def summary(self) -> str:
        if self.result is not None and self.result.result_text.strip():
            return self.result.result_text
        text = "\n".join(self.text_fragments)
        if len(text) > MAX_SUMMARY_CHARS:
            return text[:MAX_SUMMARY_CHARS] + "... (truncated)"
        return text

    def succeeded(self, exit_code: Optional[int]) -> bool:
        """Exit status 0 and a non-error terminal record was seen."""
        return exit_code == 0 and self.result is not None and not self.result.is_error

    def to_step_outcome(
        self,
        name: str,
        invocation: InvocationResult,
        session_tag: Optional[str] = None,
        resumed: bool = False,
    ) -> StepOutcome:
        """Snapshot the aggregated state as a StepOutcome."""
        anomalies = list(self.anomalies)
        if self.malformed_lines:
            anomalies.append(f"skipped {self.malformed_lines} malformed stream lines")
        if self.result is None and not (invocation.canceled or invocation.aborted):
            anomalies.append("no result event received")

        success = self.succeeded(invocation.exit_code) and invocation.success
        return StepOutcome(
            name=name,
            session_tag=session_tag,
            duration_secs=round(invocation.duration_secs, 3),
            num_turns=self.num_turns,
            total_cost_usd=self.total_cost_usd,
            permission_denials=self.permission_denials,
            files_touched=list(self.files_touched),
            tests_passed=self.tests_passed,
            summary=self.summary,
            success=success,
            session_id=self.session_id,
            resumed=resumed,
            exit_code=invocation.exit_code,
            anomalies=anomalies,
        )

"""
cycle_config.py - Load and validate cycles.yaml.

The configuration file declares global permissions and safety limits, the
cycle definitions, and optional template variables:

    global:
      permissions: ["Read", "Edit(./src/**)"]
      max_permission_denials: 10
      circuit_breaker_repeated: 5

    cycles:
      - name: coding
        description: Pick a task and implement it
        prompt: "You are the coding cycle."
        permissions: ["Bash(pytest *)"]
        context: summaries

      - name: feature
        description: Plan, review and implement
        steps:
          - name: plan
            session: architect
            prompt: "Write a plan."
          - name: plan-review
            router: llm
            max_visits: 2
            prompt: "Review the plan."
          - name: implement
            session: architect
            prompt: "Implement the plan."

Everything is validated at load time: malformed permission strings, duplicate
cycle or step names, dangling ``after`` references and cycles without any
prompt are configuration errors and stop the run before any agent starts.

Usage:
    from cycleflow.config import load_config, parse_config

    config = load_config(Path("cycles.yaml"))
    cycle = config.get_cycle("coding")
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from cycleflow.errors import ConfigError, UnknownCycleError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "cycles.yaml"

# Tool name, optionally followed by a parenthesised specifier: Read, Edit(./src/**)
_PERMISSION_RE = re.compile(r"^(?P<tool>[A-Za-z0-9]+)(?:\((?P<spec>.*)\))?$")


class ContextMode(str, Enum):
    """How much iteration history is injected into a cycle's prompts."""

    NONE = "none"
    SUMMARIES = "summaries"
    FULL = "full"


class StepRouter(str, Enum):
    """How the next step is chosen after a step completes."""

    SEQUENTIAL = "sequential"
    LLM = "llm"  # model-directed


class BrokenSessionPolicy(str, Enum):
    """What to do when a session tag has no resumable handle."""

    ABORT = "abort"
    FRESH = "fresh"


def validate_permission(perm: str) -> None:
    """Validate an ``--allowedTools`` capability string.

    Accepts a bare tool name (``Read``) or a tool name with a non-empty
    specifier (``Bash(pytest *)``). Tool names start with an uppercase ASCII
    letter and contain only ASCII letters and digits.

    Raises:
        ValueError: If the string is malformed.
    """
    if not perm:
        raise ValueError("Invalid permission '': permission string cannot be empty")

    match = _PERMISSION_RE.match(perm)
    if match is None:
        if "(" in perm:
            raise ValueError(
                f"Invalid permission '{perm}': expected format 'ToolName' or 'ToolName(specifier)'"
            )
        raise ValueError(f"Invalid permission '{perm}': tool name must be alphanumeric")

    tool = match.group("tool")
    if not tool[0].isupper():
        raise ValueError(f"Invalid permission '{perm}': tool name must start with an uppercase letter")

    spec = match.group("spec")
    if spec is not None and not spec.strip():
        raise ValueError(f"Invalid permission '{perm}': specifier inside parentheses cannot be empty")


def _validate_permission_list(perms: List[str]) -> List[str]:
    for perm in perms:
        validate_permission(perm)
    return perms


def _validate_limits(max_turns: Optional[int], max_cost_usd: Optional[float], label: str) -> None:
    if max_turns is not None and max_turns <= 0:
        raise ValueError(f"{label}: max_turns must be greater than 0")
    if max_cost_usd is not None and max_cost_usd <= 0:
        raise ValueError(f"{label}: max_cost_usd must be greater than 0")


# =============================================================================
# Models
# =============================================================================


class GlobalConfig(BaseModel):
    """Settings shared by every cycle."""

    model_config = ConfigDict(extra="forbid")

    permissions: List[str] = Field(default_factory=list)
    max_permission_denials: int = Field(
        default=10,
        ge=0,
        description="Refuse to start another step or cycle once denials exceed this",
    )
    circuit_breaker_repeated: int = Field(
        default=5,
        ge=0,
        description="Kill a step after this many consecutive tool errors (0 disables)",
    )
    max_consecutive_failures: int = Field(default=3, ge=1)
    agent_command: str = Field(default="claude", min_length=1)
    on_broken_session: BrokenSessionPolicy = BrokenSessionPolicy.ABORT
    step_timeout_secs: Optional[float] = Field(default=None, gt=0)

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: List[str]) -> List[str]:
        return _validate_permission_list(v)


class StepConfig(BaseModel):
    """One step of a multi-step cycle."""

    model_config = ConfigDict(extra="forbid")

    name: str
    prompt: str
    permissions: List[str] = Field(default_factory=list)
    session: Optional[str] = None
    router: StepRouter = StepRouter.SEQUENTIAL
    max_visits: int = Field(default=3, ge=1)
    max_turns: Optional[int] = None
    max_cost_usd: Optional[float] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Step name cannot be empty")
        return v

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: List[str]) -> List[str]:
        return _validate_permission_list(v)

    @field_validator("session")
    @classmethod
    def validate_session(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("Session tag cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_step_limits(self) -> "StepConfig":
        _validate_limits(self.max_turns, self.max_cost_usd, f"Step '{self.name}'")
        return self


class CycleConfig(BaseModel):
    """A named cycle: either a legacy flat prompt or an ordered list of steps."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    prompt: str = ""
    permissions: List[str] = Field(default_factory=list)
    after: List[str] = Field(default_factory=list)
    context: ContextMode = ContextMode.NONE
    min_interval: Optional[int] = Field(default=None, ge=0)
    max_turns: Optional[int] = None
    max_cost_usd: Optional[float] = None
    steps: List[StepConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Cycle name cannot be empty")
        return v

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: List[str]) -> List[str]:
        return _validate_permission_list(v)

    @model_validator(mode="after")
    def validate_shape(self) -> "CycleConfig":
        _validate_limits(self.max_turns, self.max_cost_usd, f"Cycle '{self.name}'")

        if not self.steps and not self.prompt:
            raise ValueError(
                f"Cycle '{self.name}' must have a 'prompt' (single-step) or 'steps' (multi-step)"
            )
        if self.steps and self.prompt:
            raise ValueError(f"Cycle '{self.name}' cannot have both a top-level 'prompt' and 'steps'")

        seen = set()
        for step in self.steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name '{step.name}' in cycle '{self.name}'")
            seen.add(step.name)
        return self

    @property
    def is_multi_step(self) -> bool:
        return bool(self.steps)

    def implicit_step(self) -> StepConfig:
        """Build the single step that a legacy flat-prompt cycle stands for.

        The step carries no permissions of its own; the cycle's permissions
        are applied through the cycle layer.
        """
        return StepConfig(
            name=self.name,
            prompt=self.prompt,
            max_turns=self.max_turns,
            max_cost_usd=self.max_cost_usd,
        )

    def effective_steps(self) -> List[StepConfig]:
        return list(self.steps) if self.steps else [self.implicit_step()]


class FlowConfig(BaseModel):
    """Top-level configuration parsed from cycles.yaml."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    global_: GlobalConfig = Field(alias="global")
    cycles: List[CycleConfig]
    vars: Dict[str, str] = Field(default_factory=dict)

    @field_validator("vars", mode="before")
    @classmethod
    def stringify_vars(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_cycles(self) -> "FlowConfig":
        names: List[str] = []
        for cycle in self.cycles:
            if cycle.name in names:
                raise ValueError(f"Duplicate cycle name: '{cycle.name}'")
            names.append(cycle.name)

        for cycle in self.cycles:
            for dep in cycle.after:
                if dep not in names:
                    raise ValueError(
                        f"Cycle '{cycle.name}' references unknown cycle '{dep}' in 'after'"
                    )
        return self

    @property
    def global_config(self) -> GlobalConfig:
        return self.global_

    @property
    def cycle_names(self) -> List[str]:
        return [c.name for c in self.cycles]

    def get_cycle(self, name: str) -> Optional[CycleConfig]:
        for cycle in self.cycles:
            if cycle.name == name:
                return cycle
        return None

    def require_cycle(self, name: str) -> CycleConfig:
        cycle = self.get_cycle(name)
        if cycle is None:
            raise UnknownCycleError(name, self.cycle_names)
        return cycle


# =============================================================================
# Loading
# =============================================================================


def _format_validation_error(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        # pydantic prefixes ValueError messages raised from validators
        msg = msg.removeprefix("Value error, ")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def parse_config(data: Any, source: Optional[str] = None) -> FlowConfig:
    """Validate an already-parsed mapping into a FlowConfig.

    Raises:
        ConfigError: If the mapping fails validation.
    """
    if not isinstance(data, dict):
        raise ConfigError(["configuration must be a mapping"], path=source)
    try:
        return FlowConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc), path=source) from exc


def parse_config_text(text: str, source: Optional[str] = None) -> FlowConfig:
    """Parse YAML text into a FlowConfig."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError([f"YAML parse error: {exc}"], path=source) from exc
    return parse_config(data, source=source)


def load_config(path: Path) -> FlowConfig:
    """Load and validate a cycles.yaml file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError([f"cannot read config file: {exc}"], path=str(path)) from exc

    config = parse_config_text(text, source=str(path))
    logger.debug("Loaded %d cycles from %s", len(config.cycles), path)
    return config

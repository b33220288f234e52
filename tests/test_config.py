"""Tests for cycles.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from cycleflow.config import (
    BrokenSessionPolicy,
    ContextMode,
    StepRouter,
    load_config,
    parse_config,
    parse_config_text,
    validate_permission,
)
from cycleflow.errors import ConfigError, UnknownCycleError

EXAMPLE = """
global:
  permissions: ["Read", "Edit(./src/**)"]
  max_permission_denials: 4
  circuit_breaker_repeated: 6

vars:
  todo_file: TODO.md
  retries: 2

cycles:
  - name: coding
    description: Pick a task and implement it
    prompt: "Work through {{todo_file}}"
    permissions: ["Bash(pytest *)"]
    context: summaries

  - name: gardening
    description: Tidy up
    prompt: "Refactor"
    after: [coding]
    min_interval: 3

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
        permissions: ["Write(./src/**)"]
        max_turns: 40
"""


def _cycle(**overrides):
    data = {"name": "coding", "prompt": "Code"}
    data.update(overrides)
    return data


class TestValidatePermission:
    """Capability string syntax."""

    @pytest.mark.parametrize("perm", ["Read", "Edit(./src/**)", "Bash(cargo test *)", "Tool2", "Mcp1(server:*)"])
    def test_valid(self, perm: str) -> None:
        validate_permission(perm)

    @pytest.mark.parametrize(
        "perm,fragment",
        [
            ("", "cannot be empty"),
            ("read", "uppercase"),
            ("1Read", "uppercase"),
            ("Edit()", "cannot be empty"),
            ("Edit(  )", "cannot be empty"),
            ("Edit(./src", "expected format"),
            ("Edit(./src)x", "expected format"),
            ("Web Fetch", "alphanumeric"),
            ("Édit", "alphanumeric"),
        ],
    )
    def test_invalid(self, perm: str, fragment: str) -> None:
        with pytest.raises(ValueError, match="Invalid permission") as exc_info:
            validate_permission(perm)
        assert fragment in str(exc_info.value)


class TestLoadConfig:
    """Parsing the YAML file into models."""

    def test_parses_example(self) -> None:
        config = parse_config_text(EXAMPLE)

        assert config.cycle_names == ["coding", "gardening", "feature"]
        assert config.global_config.permissions == ["Read", "Edit(./src/**)"]
        assert config.global_config.max_permission_denials == 4
        assert config.global_config.circuit_breaker_repeated == 6
        assert config.global_config.on_broken_session == BrokenSessionPolicy.ABORT
        assert config.vars == {"todo_file": "TODO.md", "retries": "2"}

        coding = config.get_cycle("coding")
        assert coding is not None
        assert coding.context == ContextMode.SUMMARIES
        assert not coding.is_multi_step

        feature = config.require_cycle("feature")
        assert feature.is_multi_step
        review = feature.steps[1]
        assert review.router == StepRouter.LLM
        assert review.max_visits == 2
        assert feature.steps[0].router == StepRouter.SEQUENTIAL
        assert feature.steps[0].max_visits == 3
        assert feature.steps[2].max_turns == 40

    def test_defaults(self) -> None:
        config = parse_config({"global": {}, "cycles": [_cycle()]})
        g = config.global_config
        assert g.permissions == []
        assert g.max_permission_denials == 10
        assert g.circuit_breaker_repeated == 5
        assert g.max_consecutive_failures == 3
        assert g.agent_command == "claude"
        assert config.get_cycle("coding").context == ContextMode.NONE

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cycles.yaml"
        path.write_text(EXAMPLE, encoding="utf-8")
        assert load_config(path).get_cycle("gardening").min_interval == 3

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="cannot read config file"):
            load_config(tmp_path / "nope.yaml")

    def test_yaml_syntax_error(self) -> None:
        with pytest.raises(ConfigError, match="YAML parse error"):
            parse_config_text("cycles: [unclosed")

    def test_non_mapping(self) -> None:
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_config_text("- just\n- a list\n")

    def test_unknown_cycle(self) -> None:
        config = parse_config_text(EXAMPLE)
        assert config.get_cycle("deploy") is None
        with pytest.raises(UnknownCycleError, match="coding, gardening, feature"):
            config.require_cycle("deploy")


class TestConfigErrors:
    """Everything rejected before execution starts."""

    @pytest.mark.parametrize(
        "cycles,fragment",
        [
            ([_cycle(), _cycle()], "Duplicate cycle name"),
            ([_cycle(name="  ")], "Cycle name cannot be empty"),
            ([_cycle(after=["ghost"])], "unknown cycle 'ghost'"),
            ([_cycle(permissions=["bash"])], "uppercase"),
            ([{"name": "empty"}], "must have a 'prompt'"),
            (
                [_cycle(steps=[{"name": "a", "prompt": "x"}])],
                "cannot have both",
            ),
            (
                [{"name": "multi", "steps": [{"name": "a", "prompt": "x"}, {"name": "a", "prompt": "y"}]}],
                "Duplicate step name 'a'",
            ),
            ([{"name": "multi", "steps": [{"name": "", "prompt": "x"}]}], "Step name cannot be empty"),
            ([_cycle(max_turns=0)], "max_turns must be greater than 0"),
            ([_cycle(max_cost_usd=0)], "max_cost_usd must be greater than 0"),
            (
                [{"name": "multi", "steps": [{"name": "a", "prompt": "x", "max_visits": 0}]}],
                "greater than or equal to 1",
            ),
            ([_cycle(colour="blue")], "Extra inputs are not permitted"),
        ],
    )
    def test_rejected(self, cycles, fragment: str) -> None:
        with pytest.raises(ConfigError) as exc_info:
            parse_config({"global": {}, "cycles": cycles})
        assert any(fragment in message for message in exc_info.value.errors), exc_info.value.errors

    def test_invalid_global_permission(self) -> None:
        with pytest.raises(ConfigError, match="specifier inside parentheses cannot be empty"):
            parse_config({"global": {"permissions": ["Edit()"]}, "cycles": [_cycle()]})

    def test_global_section_required(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            parse_config({"cycles": [_cycle()]})
        assert exc_info.value.errors == ["global: Field required"]

    def test_error_lists_path(self) -> None:
        with pytest.raises(ConfigError, match=r"Invalid configuration in cycles\.yaml"):
            parse_config({"global": {}, "cycles": [{"name": "x"}]}, source="cycles.yaml")


class TestSteps:
    """Implicit and explicit steps."""

    def test_implicit_step(self) -> None:
        config = parse_config({"global": {}, "cycles": [_cycle(max_turns=5, permissions=["Grep"])]})
        cycle = config.get_cycle("coding")
        steps = cycle.effective_steps()

        assert len(steps) == 1
        assert steps[0].name == "coding"
        assert steps[0].prompt == "Code"
        assert steps[0].permissions == []
        assert steps[0].max_turns == 5
        assert steps[0].router == StepRouter.SEQUENTIAL

    def test_explicit_steps(self) -> None:
        config = parse_config_text(EXAMPLE)
        names = [s.name for s in config.get_cycle("feature").effective_steps()]
        assert names == ["plan", "plan-review", "implement"]

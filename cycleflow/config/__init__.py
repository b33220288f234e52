"""Configuration loading for cycleflow."""

from .cycle_config import (
    DEFAULT_CONFIG_FILE,
    BrokenSessionPolicy,
    ContextMode,
    CycleConfig,
    FlowConfig,
    GlobalConfig,
    StepConfig,
    StepRouter,
    load_config,
    parse_config,
    parse_config_text,
    validate_permission,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "BrokenSessionPolicy",
    "ContextMode",
    "CycleConfig",
    "FlowConfig",
    "GlobalConfig",
    "StepConfig",
    "StepRouter",
    "load_config",
    "parse_config",
    "parse_config_text",
    "validate_permission",
]

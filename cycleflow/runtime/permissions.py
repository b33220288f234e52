"""
permissions.py - Permission layering for agent invocations.

Permissions are granted in three layers: global, cycle and step. Each layer
only ever adds capabilities; nothing at a lower layer can revoke a grant from
a higher one. The resolved list is what gets passed to ``--allowedTools``.

Validation of individual capability strings happens at config load time
(see cycleflow.config.validate_permission), not here.

Usage:
    from cycleflow.runtime.permissions import resolve_permissions

    allowed = resolve_permissions(global_perms, cycle.permissions, step.permissions)
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence


def resolve_permissions(
    global_perms: Sequence[str],
    cycle_perms: Sequence[str],
    step_perms: Optional[Sequence[str]] = None,
) -> List[str]:
    """Merge permission layers into one deduplicated allow-list.

    Order is preserved on first occurrence: global entries first, then cycle,
    then step. ``step_perms`` is None for implicit single-step cycles.

    Args:
        global_perms: Permissions granted to every cycle.
        cycle_perms: Permissions granted to this cycle.
        step_perms: Permissions granted to this step only.

    Returns:
        A new list; the inputs are never modified.
    """
    layers: List[Iterable[str]] = [global_perms, cycle_perms]
    if step_perms is not None:
        layers.append(step_perms)

    resolved: List[str] = []
    seen = set()
    for layer in layers:
        for perm in layer:
            if perm not in seen:
                seen.add(perm)
                resolved.append(perm)
    return resolved


def denied_tool_name(denial: str) -> str:
    """Strip the specifier from a denied capability: ``Bash(rm -rf x)`` -> ``Bash``."""
    return denial.split("(", 1)[0].strip()


def suggest_permission_fix(tool_name: str) -> str:
    """Suggest an allow-list entry that would have permitted a denied tool.

    Args:
        tool_name: Tool name, or a full denied capability string.

    Returns:
        A human-readable hint for cycles.yaml.
    """
    name = denied_tool_name(tool_name)
    if name.startswith("Edit") or name == "MultiEdit":
        return "Edit(./**) or Edit(./src/**)"
    if name.startswith("Write"):
        return "Write(./**) or Write(./src/**)"
    if name.startswith("Bash"):
        return "Bash(*) or Bash(pytest *)"
    return name


def summarize_denials(denials: Sequence[str]) -> List[str]:
    """Build one fix hint per distinct denied tool, in first-seen order."""
    hints: List[str] = []
    seen = set()
    for denial in denials:
        name = denied_tool_name(denial)
        if name in seen:
            continue
        seen.add(name)
        hints.append(f"{name}: add {suggest_permission_fix(name)} to permissions")
    return hints

"""
template.py - ``{{variable}}`` expansion for step prompts.

Variables come from the config's ``vars`` mapping plus built-ins that
describe the current run. Built-ins win over user variables of the same
name. Unknown variables, names containing whitespace and unterminated braces
are left in the prompt unchanged.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Mapping, Optional

_VAR_RE = re.compile(r"\{\{(\S+?)\}\}")


def expand_template(template: str, variables: Mapping[str, str]) -> str:
    def _replace(match: "re.Match[str]") -> str:
        return variables.get(match.group(1), match.group(0))

    return _VAR_RE.sub(_replace, template)


def build_template_vars(
    custom_vars: Mapping[str, str],
    project_dir: Path,
    cycle_name: str,
    step_name: str,
    iteration: int,
    max_iterations: Optional[int] = None,
) -> Dict[str, str]:
    """Combine user variables with the built-ins for one step."""
    variables = dict(custom_vars)
    variables.update(
        {
            "project_dir": str(project_dir),
            "cycle_name": cycle_name,
            "step_name": step_name,
            "iteration": str(iteration),
            "max_iterations": str(max_iterations) if max_iterations is not None else "unlimited",
        }
    )
    return variables

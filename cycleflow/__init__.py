"""
cycleflow - Unattended cycle/step execution for AI coding agents.

Runs named cycles of agent steps as `claude` subprocesses, aggregates the
stream-json output of each step into outcome records, routes between steps
(sequentially or by asking the model), and chains follow-up cycles from
trigger rules.

Usage:
    from cycleflow.config import load_config
    from cycleflow.runtime.executor import CycleExecutor

    config = load_config(Path("cycles.yaml"))
    executor = CycleExecutor(config, project_root=Path.cwd())
    outcome = executor.execute_sync("coding", iteration=1)
"""

__version__ = "0.4.0"

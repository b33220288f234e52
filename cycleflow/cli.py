"""
cli.py - Command-line run loop.

Runs a cycle, logs its outcome, then keeps going with the cycles its
completion triggers until the queue is empty, a limit is reached or the run
is interrupted.

Usage:
    cycleflow --cycle coding
    cycleflow --cycle coding --config cycles.yaml --max-iterations 10
    python -m cycleflow --cycle feature --project-dir ../myproject -v

Exit codes:
    0   the last cycle succeeded
    1   a cycle failed (or too many failed in a row)
    2   configuration error or unknown cycle
    130 interrupted (SIGINT/SIGTERM)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from cycleflow.config import DEFAULT_CONFIG_FILE, FlowConfig, load_config
from cycleflow.errors import ConfigError, OutcomeLogError, UnknownCycleError
from cycleflow.runtime.circuit_breaker import DenialGate
from cycleflow.runtime.executor import CycleExecutor
from cycleflow.runtime.permissions import summarize_denials
from cycleflow.runtime.rules import find_triggered_cycles
from cycleflow.runtime.storage import DEFAULT_LOG_DIR, OutcomeLog
from cycleflow.runtime.types import CycleOutcome, CycleStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cycleflow",
        description="Run AI coding agent cycles unattended",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--cycle", "-c", required=True, help="Cycle to run first")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Path to the cycle configuration (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project root the agent works in (default: current directory)",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help=f"Outcome log directory (default: <project-dir>/{DEFAULT_LOG_DIR})",
    )
    parser.add_argument(
        "--max-iterations",
        "-n",
        type=int,
        default=None,
        help="Stop after this many cycles (default: until no cycle is triggered)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def format_outcome(outcome: CycleOutcome) -> str:
    """One-line summary of a cycle outcome for the terminal."""
    parts = [f"[{outcome.iteration}] {outcome.cycle}: {outcome.status.value}"]
    if outcome.stop_reason.value not in ("completed", "router_done"):
        parts.append(f"({outcome.stop_reason.value})")
    parts.append(f"in {outcome.duration_secs:.0f}s")
    if outcome.num_turns is not None:
        parts.append(f"{outcome.num_turns} turns")
    if outcome.total_cost_usd is not None:
        parts.append(f"${outcome.total_cost_usd:.4f}")
    if outcome.steps:
        parts.append(f"{len(outcome.steps)} steps")
    return " ".join(parts)


def _print_permission_tips(outcome: CycleOutcome) -> None:
    if not outcome.permission_denials:
        return
    print(f"{outcome.permission_denial_count} permission denials in '{outcome.cycle}':", file=sys.stderr)
    for denial in outcome.permission_denials:
        print(f"  - {denial}", file=sys.stderr)
    print("Tip: add permission strings to the config to avoid denials:", file=sys.stderr)
    for hint in summarize_denials(outcome.permission_denials):
        print(f"  {hint}", file=sys.stderr)


async def run_loop(
    config: FlowConfig,
    executor: CycleExecutor,
    outcome_log: OutcomeLog,
    first_cycle: str,
    max_iterations: Optional[int] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Run cycles until the queue empties, a limit is hit or the run is canceled.

    Returns:
        The process exit code.
    """
    global_config = config.global_config
    gate = DenialGate(global_config.max_permission_denials)
    queue: Deque[str] = deque([first_cycle])
    iteration = outcome_log.last_iteration()
    executed = 0
    consecutive_failures = 0
    exit_code = EXIT_OK

    while queue:
        if max_iterations is not None and executed >= max_iterations:
            logger.info("Reached --max-iterations (%d); %d cycle(s) left queued", max_iterations, len(queue))
            break
        if cancel_event is not None and cancel_event.is_set():
            return EXIT_CANCELED

        cycle_name = queue.popleft()
        iteration += 1
        history = outcome_log.read_all()
        outcome = await executor.execute(
            cycle_name,
            iteration,
            history=history,
            cancel_event=cancel_event,
            max_iterations=max_iterations,
        )
        outcome_log.append(outcome)
        executed += 1

        print(format_outcome(outcome))
        _print_permission_tips(outcome)

        if outcome.status == CycleStatus.CANCELED:
            logger.info("Run interrupted; partial outcome logged for iteration %d", iteration)
            return EXIT_CANCELED

        if not outcome.success:
            consecutive_failures += 1
            exit_code = EXIT_FAILURE
            if outcome.stop_detail:
                print(f"Cycle '{cycle_name}' failed: {outcome.stop_detail}", file=sys.stderr)
            if consecutive_failures >= global_config.max_consecutive_failures:
                logger.error("%d consecutive cycle failures; stopping", consecutive_failures)
                break
            continue

        consecutive_failures = 0
        exit_code = EXIT_OK

        gate_reason = gate.check(outcome.permission_denial_count or 0)
        if gate_reason is not None:
            print(f"Stopping after '{cycle_name}': {gate_reason}", file=sys.stderr)
            exit_code = EXIT_FAILURE
            break

        for triggered in find_triggered_cycles(config, cycle_name, history + [outcome], iteration):
            if triggered not in queue:
                logger.info("Auto-triggering '%s' after '%s'", triggered, cycle_name)
                queue.append(triggered)

    return exit_code


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event) -> List[int]:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported on this platform", sig)
    return installed


async def _main_async(args: argparse.Namespace, config: FlowConfig) -> int:
    project_dir = args.project_dir.resolve()
    log_dir = args.log_dir if args.log_dir is not None else project_dir / DEFAULT_LOG_DIR

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, cancel_event)
    try:
        return await run_loop(
            config,
            CycleExecutor(config, project_dir),
            OutcomeLog(log_dir),
            args.cycle,
            max_iterations=args.max_iterations,
            cancel_event=cancel_event,
        )
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.max_iterations is not None and args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")

    try:
        config = load_config(args.config)
        config.require_cycle(args.cycle)
    except (ConfigError, UnknownCycleError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return asyncio.run(_main_async(args, config))
    except OutcomeLogError as e:
        logger.error("%s", e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_CANCELED


if __name__ == "__main__":
    sys.exit(main())

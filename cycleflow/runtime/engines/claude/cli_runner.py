"""
cli_runner.py - Run one agent invocation and stream its output.

The subprocess has two output channels that must be drained concurrently,
otherwise a full stderr pipe can block the child while we wait on stdout.
Two reader tasks pump lines into one queue; a single consumer feeds stdout
lines to the StreamAggregator in arrival order and forwards stderr lines to
the log without parsing them. A stdout line longer than STREAM_LIMIT is
discarded and counted as malformed; reading carries on past it.

The consumer also watches for cancellation and for the circuit breaker. In
either case the child is terminated (then killed after a grace period) rather
than merely abandoned.

Usage:
    from cycleflow.runtime.engines.claude.cli_runner import run_invocation

    result = await run_invocation(invocation, aggregator, cancel_event=cancel)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

from cycleflow.errors import InvocationError

from ..models import AgentInvocation, InvocationResult
from .stream import StreamAggregator, StreamEvent

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

TERMINATE_GRACE_SECS = 5.0
READER_DRAIN_SECS = 2.0
STDERR_TAIL_LINES = 50
# asyncio's default 64 KiB line limit is too small for large tool results.
STREAM_LIMIT = 16 * 1024 * 1024

# (channel, line); line is None for a line that was longer than STREAM_LIMIT
_Item = Optional[Tuple[str, Optional[str]]]


async def _read_line(stream: asyncio.StreamReader) -> Optional[bytes]:
    """Read one line, or b"" at EOF.

    A line longer than the reader's limit is consumed up to and including its
    newline and discarded; None is returned in its place.
    """
    overrun = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            raw = exc.partial
        except asyncio.LimitOverrunError as exc:
            overrun = True
            await stream.readexactly(exc.consumed)
            continue
        return None if overrun else raw


async def _pump(stream: Optional[asyncio.StreamReader], channel: str, queue: "asyncio.Queue[_Item]") -> None:
    try:
        if stream is None:
            return
        while True:
            raw = await _read_line(stream)
            if raw is None:
                logger.warning("Discarded a line on %s longer than %d bytes", channel, STREAM_LIMIT)
                await queue.put((channel, None))
                continue
            if not raw:
                break
            await queue.put((channel, raw.decode("utf-8", errors="replace").rstrip("\r\n")))
    finally:
        await queue.put(None)


async def _stop_process(process: asyncio.subprocess.Process, grace: float) -> None:
    """Terminate the child, escalating to kill if it ignores SIGTERM."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        logger.debug("Process %s already exited", process.pid)
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM; killing", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            logger.debug("Process %s already exited", process.pid)
        await process.wait()


async def _next_item(
    queue: "asyncio.Queue[_Item]",
    cancel_event: Optional[asyncio.Event],
    deadline: Optional[float],
) -> Tuple[str, _Item]:
    """Wait for the next queued line, cancellation or the deadline.

    Returns:
        ("item", item), ("cancel", None) or ("timeout", None).
    """
    timeout = None
    if deadline is not None:
        timeout = max(0.0, deadline - time.monotonic())

    get_task = asyncio.ensure_future(queue.get())
    waiters = {get_task}
    cancel_task = None
    if cancel_event is not None:
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_task)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_task is not None and not cancel_task.done():
            cancel_task.cancel()

    if get_task in done:
        return "item", get_task.result()

    get_task.cancel()
    if cancel_task is not None and cancel_task in done:
        return "cancel", None
    return "timeout", None


async def run_invocation(
    invocation: AgentInvocation,
    aggregator: StreamAggregator,
    cancel_event: Optional[asyncio.Event] = None,
    on_event: Optional[Callable[[StreamEvent], None]] = None,
    on_stderr: Optional[Callable[[str], None]] = None,
    timeout: Optional[float] = None,
) -> InvocationResult:
    """Start the agent subprocess and aggregate its stream until it exits.

    Args:
        invocation: The command to run.
        aggregator: Receives every stdout line in arrival order.
        cancel_event: When set, the child is terminated and the result is
            marked canceled.
        on_event: Called with each parsed event, for live display.
        on_stderr: Called with each diagnostic line.
        timeout: Seconds before the child is killed and marked timed out.

    Returns:
        The InvocationResult.

    Raises:
        InvocationError: If the subprocess could not be started.
    """
    logger.debug("Starting agent: %s", invocation.display())
    start = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *invocation.argv,
            cwd=str(invocation.cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise InvocationError(f"Failed to start '{invocation.program}': {exc}") from exc

    queue: "asyncio.Queue[_Item]" = asyncio.Queue()
    readers: List[asyncio.Task] = [
        asyncio.ensure_future(_pump(process.stdout, STDOUT, queue)),
        asyncio.ensure_future(_pump(process.stderr, STDERR, queue)),
    ]
    stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    deadline = start + timeout if timeout else None

    canceled = aborted = timed_out = False
    open_channels = len(readers)
    try:
        while open_channels:
            kind, item = await _next_item(queue, cancel_event, deadline)
            if kind == "cancel":
                logger.info("Cancellation requested; terminating agent process %s", process.pid)
                canceled = True
                break
            if kind == "timeout":
                logger.warning("Agent process %s exceeded %.0fs; terminating", process.pid, timeout)
                timed_out = True
                break
            if item is None:
                open_channels -= 1
                continue

            channel, line = item
            if line is None:
                if channel == STDOUT:
                    aggregator.skip_line("line exceeded the read limit")
                continue
            if channel == STDERR:
                stderr_tail.append(line)
                logger.debug("[agent stderr] %s", line)
                if on_stderr is not None:
                    on_stderr(line)
                continue

            events = aggregator.feed_line(line)
            if on_event is not None:
                for event in events:
                    on_event(event)
            if aggregator.breaker_tripped:
                logger.warning("Circuit breaker tripped; terminating agent process %s", process.pid)
                aborted = True
                break
    finally:
        if process.returncode is None and (canceled or aborted or timed_out or open_channels):
            await _stop_process(process, TERMINATE_GRACE_SECS)
        exit_code = await process.wait()

        _, pending = await asyncio.wait(readers, timeout=READER_DRAIN_SECS)
        for task in pending:
            task.cancel()

    duration = time.monotonic() - start
    if canceled or aborted or timed_out:
        exit_code_out: Optional[int] = None
    else:
        exit_code_out = exit_code
    logger.debug("Agent process exited with %s after %.1fs", exit_code, duration)

    return InvocationResult(
        exit_code=exit_code_out,
        stderr="\n".join(stderr_tail),
        duration_secs=duration,
        canceled=canceled,
        aborted=aborted,
        timed_out=timed_out,
    )

"""
async_utils.py - Async-to-sync bridging utilities.

The cycle executor and subprocess runner are coroutines; this lets
synchronous callers (tests, simple scripts) drive them.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async_safely(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from synchronous code.

    When no event loop is running, the coroutine runs on a fresh loop via
    ``asyncio.run``. When called from inside a running loop, a warning is
    logged and the coroutine runs on its own loop in a worker thread.

    Args:
        coro: The coroutine to run.

    Returns:
        The result of the coroutine.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    logger.warning("run_async_safely called from async context. Consider using await directly.")
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()

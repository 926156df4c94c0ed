"""
Running blocking record-store calls from async handlers.

SQLModel sessions are synchronous. Routers, the entitlement monitor and
the change stream hand their reads and writes to run_sync(), which runs
them on the default thread pool with a deadline and reports slow calls.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOW_CALL_MS = 500.0


async def run_sync(
    func: Callable[..., T],
    *args: Any,
    timeout: float = 30,
    **kwargs: Any,
) -> T:
    """
    Run ``func(*args, **kwargs)`` in a worker thread.

    Args:
        func: Synchronous callable, usually one that opens its own session.
        timeout: Seconds before the caller gives up (default 30). The
            worker thread is not interrupted and finishes on its own.

    Returns:
        Whatever func returns.

    Raises:
        TimeoutError: If the call exceeds *timeout*.
        Exception: Anything func raises, unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    call = functools.partial(func, *args, **kwargs)
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        logger.error("run_sync %s timed out after %.0fms", name, elapsed)
        raise TimeoutError(
            f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)"
        ) from None

    elapsed = (time.perf_counter() - start) * 1000
    if elapsed >= SLOW_CALL_MS:
        logger.warning("run_sync %s slow: %.0fms", name, elapsed)
    else:
        logger.debug("run_sync %s completed in %.2fms", name, elapsed)
    return result

"""Async helpers shared by executors and the orchestrator."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


async def run_with_timeout(
    coro: Awaitable[T],
    timeout: float | None,
    timeout_message: str = "Operation timed out",
) -> T:
    """Run a coroutine with an optional timeout.

    Args:
        coro: Coroutine to run
        timeout: Timeout in seconds, None for no limit
        timeout_message: Message for timeout error

    Returns:
        Result of the coroutine

    Raises:
        TransportTimeout: If the operation times out
    """
    from deployctl.core.exceptions import TransportTimeout

    if timeout is None:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        raise TransportTimeout(timeout_message, timeout_seconds=timeout)


def run_sync(coro: Awaitable[T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # If we're already in an async context, create a new loop
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)

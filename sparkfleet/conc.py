"""Concurrent utilities - bounded fan-out that always waits for every unit."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

I = TypeVar("I")
O = TypeVar("O")


async def settle_all(
    fn: Callable[[I], Awaitable[O]],
    items: Iterable[I],
    concurrency: int,
    timeout: float | None = None,
) -> list[O | Exception]:
    """Apply ``fn`` to items concurrently and collect every outcome.

    A failing unit does not cancel its siblings. Outcomes come back in the
    same order as ``items``: either the result or the exception it raised.

    Args:
        fn: Async function to apply to each item.
        items: Items to process.
        concurrency: Max units running at the same time.
        timeout: Seconds to wait for all units. None waits forever.

    Raises:
        TimeoutError: The units did not all finish within ``timeout``.

    Example:
        >>> outcomes = await settle_all(setup_worker, workers, concurrency=10)
        >>> errors = [o for o in outcomes if isinstance(o, Exception)]
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def bounded(item: I) -> O:
        async with semaphore:
            return await fn(item)

    async with asyncio.timeout(timeout):
        outcomes = await asyncio.gather(
            *(bounded(item) for item in items),
            return_exceptions=True,
        )

    for outcome in outcomes:
        # Cancellation and interpreter exits are not unit failures.
        if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
            raise outcome
    return outcomes  # type: ignore[return-value]

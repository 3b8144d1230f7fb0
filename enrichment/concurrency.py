"""
Bounded concurrency for async work.

``map_bounded`` runs an async worker over a list with at most ``concurrency``
calls in flight and returns results in input order. Workers pull the next
index from a shared cursor, so exactly ``min(concurrency, len(items))``
pullers are started.

A worker exception fails the whole call and cancels the other pullers. Wrap
the worker with :func:`capture` when one item must not take down the batch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Outcome(Generic[R]):
    """Tagged result of a captured call: either ``value`` or ``error`` is set."""
    ok: bool
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: R) -> "Outcome[R]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "Outcome[R]":
        return cls(ok=False, error=error)


def capture(worker: Callable[[T], Awaitable[R]]) -> Callable[[T], Awaitable[Outcome[R]]]:
    """Wrap a worker so exceptions come back as failed outcomes."""

    async def captured(item: T) -> Outcome[R]:
        try:
            return Outcome.success(await worker(item))
        except Exception as e:
            return Outcome.failure(e)

    return captured


async def map_bounded(
    items: Sequence[T],
    concurrency: int,
    worker: Callable[[T], Awaitable[R]],
) -> List[R]:
    """
    Apply ``worker`` to every item with bounded concurrency.

    Args:
        items: Inputs, processed in index order
        concurrency: Maximum number of workers in flight (>= 1)
        worker: Async callable applied to each item

    Returns:
        List where ``result[i] == await worker(items[i])``

    Raises:
        ValidationError: If concurrency is lower than 1
    """
    if concurrency < 1:
        raise ValidationError(
            "Concurrency must be at least 1",
            context={"field_name": "concurrency", "field_value": concurrency}
        )

    items = list(items)
    if not items:
        return []

    results: List[Any] = [None] * len(items)
    cursor = 0

    async def puller() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await worker(items[index])

    pullers = [
        asyncio.ensure_future(puller())
        for _ in range(min(concurrency, len(items)))
    ]

    try:
        await asyncio.gather(*pullers)
    except BaseException:
        for task in pullers:
            if not task.done():
                task.cancel()
        # Let cancelled pullers unwind before propagating
        await asyncio.gather(*pullers, return_exceptions=True)
        raise

    return results

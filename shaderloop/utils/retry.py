from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    attempts: int,
    delay: float,
) -> Optional[T]:
    """Call ``check`` up to ``attempts`` times, sleeping ``delay`` in between.

    Returns the first non-``None`` value, or ``None`` once the attempts run out.
    """
    for attempt in range(max(attempts, 1)):
        value = await check()
        if value is not None:
            return value
        if attempt < attempts - 1:
            await asyncio.sleep(delay)
    return None

"""Retry policy and the delayed, sequential retry pass used after bulk loads."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    delay: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")


async def retry_pass(
    failed: Iterable[T],
    attempt: Callable[[T], Awaitable[bool]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
) -> tuple[list[T], list[T]]:
    """Retry failed items in rounds.

    Each round waits policy.delay, then calls attempt() once per remaining
    item, one after another. Items whose attempt returns True are recovered.
    Returns (recovered, still_failed), both in original order.
    """
    remaining = list(failed)
    recovered: list[T] = []

    for round_no in range(1, policy.max_attempts + 1):
        if not remaining:
            break
        logger.info(f"Retry round {round_no}/{policy.max_attempts}: {len(remaining)} item(s) after {policy.delay}s")
        await sleep(policy.delay)

        still_failed = []
        for item in remaining:
            if await attempt(item):
                recovered.append(item)
            else:
                still_failed.append(item)
        remaining = still_failed

    return recovered, remaining

"""Bounded retries with a backoff schedule."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from .errors import ExhaustedRetries

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    The n-th wait uses ``delays[n - 1]``; attempts beyond the schedule keep
    using its last value.
    """

    max_attempts: int = 2
    delays: Sequence[float] = (1.0, 2.0)

    def delay_for(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        index = min(max(attempt, 1), len(self.delays)) - 1
        return max(0.0, float(self.delays[index]))


async def retry_async(
    factory: Callable[[], Awaitable[_T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> _T:
    """Run ``factory`` until it succeeds or the policy is exhausted.

    Only the final failure is surfaced, wrapped in :class:`ExhaustedRetries`.
    """

    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts):
        try:
            return await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            delay = policy.delay_for(attempt)
            logger.warning(
                "Попытка %d/%d (%s) не удалась: %s; повтор через %.1f с",
                attempt,
                attempts,
                description,
                exc,
                delay,
            )
            await sleep(delay)

    try:
        return await factory()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        raise ExhaustedRetries(attempts, exc) from exc

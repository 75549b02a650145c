"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)

_DISCORD_EPOCH = datetime(2015, 1, 1, tzinfo=timezone.utc)


class RateLimiter:
    """Sliding-window limiter bounding operations per key.

    Every key (a thread id) may perform at most ``max_operations`` within
    any trailing ``window`` seconds. Callers of :meth:`wait` beyond the
    budget are suspended until the oldest recorded operation leaves the
    window; waiters for the same key are released in arrival order.
    """

    def __init__(
        self,
        max_operations: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_operations < 1:
            raise ValueError("max_operations must be positive")
        self._max_operations = max_operations
        self._window = max(0.0, window)
        self._clock = clock
        self._operations: dict[str, deque[float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def max_operations(self) -> int:
        return self._max_operations

    @property
    def window(self) -> float:
        return self._window

    def recorded(self, key: str) -> int:
        """Return the number of in-window operations recorded for ``key``."""

        records = self._operations.get(key)
        if not records:
            return 0
        self._prune(records, self._clock())
        return len(records)

    def try_acquire(self, key: str) -> bool:
        """Record an operation for ``key`` if the budget allows it right now."""

        now = self._clock()
        records = self._operations.setdefault(key, deque())
        self._prune(records, now)
        if len(records) >= self._max_operations:
            return False
        records.append(now)
        return True

    async def wait(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            while not self.try_acquire(key):
                oldest = self._operations[key][0]
                delay = oldest + self._window - self._clock()
                logger.debug("Лимит операций для треда %s, ожидание %.2f с", key, delay)
                await asyncio.sleep(max(delay, 0.001))

    def sweep(self) -> int:
        """Drop expired records and idle locks, returning the number of keys removed."""

        now = self._clock()
        removed = 0
        for key in list(self._operations):
            records = self._operations[key]
            self._prune(records, now)
            if records:
                continue
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            del self._operations[key]
            self._locks.pop(key, None)
            removed += 1
        return removed

    def _prune(self, records: deque[float], now: float) -> None:
        while records and now - records[0] >= self._window:
            records.popleft()


class ChannelProcessingGuard:
    """Coordinate access to channel-specific operations across coroutines."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, channel_id: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[channel_id] = lock
        async with lock:
            yield


class PerformanceMonitor:
    """Measure in-flight operations and log their duration."""

    def __init__(self, *, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._started: dict[str, float] = {}

    def start(self, operation: str) -> None:
        self._started[operation] = self._clock()

    def end(self, operation: str) -> float | None:
        started = self._started.pop(operation, None)
        if started is None:
            return None
        duration = self._clock() - started
        logger.info("Операция %s заняла %.2f мс", operation, duration * 1000)
        return duration

    @property
    def in_flight(self) -> int:
        return len(self._started)


def parse_delay_setting(value: str | None, default: float = 0.0) -> float:
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    try:
        if any(symbol in stripped for symbol in ".eE"):
            parsed = float(stripped)
        else:
            parsed = float(int(stripped) / 1000)
    except ValueError:
        return default
    return max(0.0, parsed)


def parse_delay_schedule(value: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
    """Parse a comma separated list of delays (see :func:`parse_delay_setting`)."""

    if value is None or not value.strip():
        return default
    delays: list[float] = []
    for part in value.split(","):
        if not part.strip():
            continue
        parsed = parse_delay_setting(part, -1.0)
        if parsed < 0:
            return default
        delays.append(parsed)
    return tuple(delays) or default


def parse_positive_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Any other value returns ``default``.
    """

    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def parse_discord_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None


def snowflake_to_datetime(snowflake: str) -> datetime:
    """Return the creation time encoded in a Discord snowflake."""

    try:
        milliseconds = int(snowflake) >> 22
    except ValueError:
        milliseconds = 0
    return _DISCORD_EPOCH + timedelta(milliseconds=milliseconds)


def snowflake_sort_key(snowflake: str) -> tuple[int, str]:
    return (int(snowflake), snowflake) if snowflake.isdigit() else (0, snowflake)

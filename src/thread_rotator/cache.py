"""Time-bounded cache of enumerated channel threads."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .models import ChannelHandle, ThreadHandle

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CacheEntry:
    fetched_at: float
    threads: tuple[ThreadHandle, ...]


class ThreadSetCache:
    """Keep the last full thread enumeration of each channel for ``duration`` seconds."""

    def __init__(self, duration: float, *, clock: Callable[[], float] = time.monotonic):
        self._duration = max(0.0, duration)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, channel_id: str) -> list[ThreadHandle] | None:
        entry = self._entries.get(channel_id)
        if entry is None:
            return None
        if not self._is_fresh(entry, self._clock()):
            del self._entries[channel_id]
            return None
        return list(entry.threads)

    def set(self, channel_id: str, threads: Sequence[ThreadHandle]) -> None:
        self._entries[channel_id] = CacheEntry(self._clock(), tuple(threads))

    def add(self, channel_id: str, thread: ThreadHandle) -> bool:
        """Append ``thread`` to a fresh entry without extending its lifetime.

        Returns ``False`` when there is no fresh entry or the thread is
        already known.
        """

        entry = self._entries.get(channel_id)
        if entry is None or not self._is_fresh(entry, self._clock()):
            return False
        if any(known.id == thread.id for known in entry.threads):
            return False
        self._entries[channel_id] = CacheEntry(entry.fetched_at, entry.threads + (thread,))
        return True

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.fetched_at < self._duration


async def fetch_thread_set(channel: ChannelHandle) -> list[ThreadHandle]:
    """Enumerate active and archived threads of ``channel`` concurrently."""

    active, archived = await asyncio.gather(
        channel.fetch_active_threads(),
        channel.fetch_archived_threads(),
    )
    return [*active, *archived]


async def load_threads(cache: ThreadSetCache, channel: ChannelHandle) -> list[ThreadHandle]:
    """Return the cached thread set of ``channel`` or enumerate and cache it."""

    cached = cache.get(channel.id)
    if cached is not None:
        logger.debug("Список тредов канала %s взят из кэша (%d)", channel.id, len(cached))
        return cached
    threads = await fetch_thread_set(channel)
    cache.set(channel.id, threads)
    logger.info("Получено %d тредов канала %s", len(threads), channel.id)
    return threads

"""Data models used across the rotation service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, Protocol


class ThreadHandle(Protocol):
    """Narrow view of a Discord thread the rotator reads and mutates."""

    @property
    def id(self) -> str: ...

    @property
    def parent_id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def created_at(self) -> datetime: ...

    @property
    def archived(self) -> bool: ...

    @property
    def locked(self) -> bool: ...

    async def set_archived(self, archived: bool) -> None: ...

    async def set_locked(self, locked: bool) -> None: ...

    async def send_message(self, text: str) -> None: ...


class ChannelHandle(Protocol):
    """Parent channel able to enumerate its threads."""

    @property
    def id(self) -> str: ...

    async def fetch_active_threads(self) -> list[ThreadHandle]: ...

    async def fetch_archived_threads(self) -> list[ThreadHandle]: ...


@dataclass(slots=True)
class NetworkOptions:
    """Proxy and client identity overrides."""

    discord_proxy_url: str | None = None
    discord_proxy_login: str | None = None
    discord_proxy_password: str | None = None
    discord_user_agent: str | None = None


@dataclass(slots=True)
class ThreadSnapshot:
    """Thread state as last reported by Discord."""

    id: str
    parent_id: str
    name: str
    created_at: datetime
    archived: bool = False
    locked: bool = False
    guild_id: str | None = None


@dataclass(slots=True)
class ThreadCreated:
    """Gateway notification about a freshly created thread."""

    thread: ThreadHandle
    guild_id: str | None = None


class ThreadAction(str, Enum):
    UNARCHIVE = "unarchive"
    SEND_MESSAGE = "send_message"
    LOCK = "lock"


@dataclass(slots=True)
class PlannedAction:
    """Actions scheduled for a single thread, applied in enum order."""

    thread: ThreadHandle
    actions: frozenset[ThreadAction]

    @property
    def sends_message(self) -> bool:
        return ThreadAction.SEND_MESSAGE in self.actions

    def ordered_actions(self) -> list[ThreadAction]:
        return [action for action in ThreadAction if action in self.actions]


@dataclass(slots=True)
class ActionPlan:
    """Ordered per-thread actions produced for one trigger thread."""

    trigger_id: str
    entries: list[PlannedAction] = field(default_factory=list)

    def __iter__(self) -> Iterator[PlannedAction]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def message_recipient(self) -> ThreadHandle | None:
        for entry in self.entries:
            if entry.sends_message:
                return entry.thread
        return None

    def thread_ids(self) -> list[str]:
        return [entry.thread.id for entry in self.entries]

"""Discord API client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

import aiohttp

from .errors import AuthError, ExternalOpError, NotFound
from .models import NetworkOptions, ThreadHandle, ThreadSnapshot
from .utils import parse_discord_timestamp, snowflake_to_datetime

API_BASE = "https://discord.com/api/v10"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_THREAD_CHANNEL_TYPES = {10, 11, 12}
_ARCHIVED_PAGE_LIMIT = 100
_ARCHIVED_MAX_PAGES = 50


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CurrentUser:
    """Account the token belongs to."""

    id: str
    username: str
    is_bot: bool = False


@dataclass(slots=True)
class ChannelInfo:
    """Basic channel metadata from Discord API."""

    id: str
    type: int
    guild_id: str | None = None
    name: str | None = None


def normalize_token(token: str) -> str:
    stripped = token.strip()
    lowered = stripped.lower()
    if lowered.startswith("bot ") or lowered.startswith("bearer "):
        return stripped
    return f"Bot {stripped}"


def parse_thread(
    payload: Mapping[str, Any], default_parent_id: str | None = None
) -> ThreadSnapshot | None:
    """Build a :class:`ThreadSnapshot` from a Discord channel payload."""

    thread_id = str(payload.get("id") or "")
    if not thread_id:
        return None
    raw_type = payload.get("type")
    if raw_type is not None and raw_type not in _THREAD_CHANNEL_TYPES:
        return None
    metadata = payload.get("thread_metadata")
    if not isinstance(metadata, Mapping):
        metadata = {}
    created_at: datetime | None = parse_discord_timestamp(metadata.get("create_timestamp"))
    if created_at is None:
        # threads created before 2022-01-09 carry no create_timestamp
        created_at = snowflake_to_datetime(thread_id)
    return ThreadSnapshot(
        id=thread_id,
        parent_id=str(payload.get("parent_id") or default_parent_id or ""),
        name=str(payload.get("name") or ""),
        created_at=created_at,
        archived=bool(metadata.get("archived", False)),
        locked=bool(metadata.get("locked", False)),
        guild_id=str(payload.get("guild_id")) if payload.get("guild_id") else None,
    )


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        network: NetworkOptions | None = None,
        timeout: float = 15.0,
    ):
        self._session = session
        self._token = normalize_token(token)
        self._network = network or NetworkOptions()
        self._timeout = timeout

    @property
    def token(self) -> str:
        return self._token

    @property
    def network(self) -> NetworkOptions:
        return self._network

    async def fetch_current_user(self) -> CurrentUser:
        try:
            data = await self._request("GET", "/users/@me", description="проверка токена")
        except ExternalOpError as exc:
            if exc.status in {401, 403}:
                raise AuthError("Discord отклонил токен") from exc
            raise
        if not isinstance(data, Mapping):
            raise ExternalOpError("Неожиданный ответ Discord на /users/@me")
        return CurrentUser(
            id=str(data.get("id") or ""),
            username=str(data.get("global_name") or data.get("username") or "bot"),
            is_bot=bool(data.get("bot")),
        )

    async def fetch_channel_info(self, channel_id: str) -> ChannelInfo:
        data = await self._request(
            "GET", f"/channels/{channel_id}", description=f"канал {channel_id}"
        )
        if not isinstance(data, Mapping):
            raise ExternalOpError(f"Неожиданный ответ Discord для канала {channel_id}")
        channel_type_raw = data.get("type")
        try:
            channel_type = int(str(channel_type_raw))
        except (TypeError, ValueError):
            channel_type = 0
        return ChannelInfo(
            id=str(data.get("id") or channel_id),
            type=channel_type,
            guild_id=str(data.get("guild_id")) if data.get("guild_id") else None,
            name=str(data.get("name") or "") if data.get("name") else None,
        )

    async def fetch_channel(self, channel_id: str) -> "DiscordChannel":
        return DiscordChannel(self, await self.fetch_channel_info(channel_id))

    async def fetch_active_threads(
        self, guild_id: str, parent_id: str
    ) -> list[ThreadSnapshot]:
        """Active threads of a guild, limited to children of ``parent_id``."""

        data = await self._request(
            "GET",
            f"/guilds/{guild_id}/threads/active",
            description=f"активные треды канала {parent_id}",
        )
        if not isinstance(data, Mapping):
            return []
        threads = _parse_threads_response(data, parent_id)
        return [thread for thread in threads if thread.parent_id == parent_id]

    async def fetch_archived_threads(self, channel_id: str) -> list[ThreadSnapshot]:
        """Archived public threads of a channel, following pagination."""

        threads: list[ThreadSnapshot] = []
        seen: set[str] = set()
        before: str | None = None
        for _ in range(_ARCHIVED_MAX_PAGES):
            params = {"limit": str(_ARCHIVED_PAGE_LIMIT)}
            if before:
                params["before"] = before
            data = await self._request(
                "GET",
                f"/channels/{channel_id}/threads/archived/public",
                params=params,
                description=f"архивные треды канала {channel_id}",
            )
            if not isinstance(data, Mapping):
                break
            page = _parse_threads_response(data, channel_id)
            for thread in page:
                if thread.id not in seen:
                    seen.add(thread.id)
                    threads.append(thread)
            if not data.get("has_more") or not page:
                break
            before = _last_archive_timestamp(data)
            if before is None:
                break
        return threads

    async def modify_thread(
        self,
        thread_id: str,
        *,
        archived: bool | None = None,
        locked: bool | None = None,
    ) -> None:
        payload: dict[str, bool] = {}
        if archived is not None:
            payload["archived"] = archived
        if locked is not None:
            payload["locked"] = locked
        if not payload:
            return
        await self._request(
            "PATCH",
            f"/channels/{thread_id}",
            json=payload,
            description=f"изменение треда {thread_id}",
        )

    async def send_message(self, channel_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": text},
            description=f"сообщение в {channel_id}",
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        description: str,
    ) -> Any:
        headers = {
            "Authorization": self._token,
            "User-Agent": self._choose_user_agent(),
            "Accept": "application/json",
        }
        url = f"{API_BASE}{path}"
        timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)

        for attempt in range(2):
            try:
                async with self._session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json,
                    proxy=self._network.discord_proxy_url,
                    proxy_auth=self._build_proxy_auth(),
                    timeout=timeout_cfg,
                ) as resp:
                    status = resp.status
                    if status == 429 and attempt == 0:
                        retry_after = await _retry_after(resp)
                        logger.warning(
                            "Discord ограничил запросы (%s), ожидание %.2f с",
                            description,
                            retry_after,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    if status == 404:
                        await resp.read()
                        raise NotFound(f"Discord: {description} не найден", status=status)
                    if status >= 400:
                        body = await resp.text()
                        raise ExternalOpError(
                            f"Discord ответил статусом {status} ({description}): {body[:200]}",
                            status=status,
                        )
                    if status == 204:
                        return None
                    return await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise ExternalOpError(
                    f"Не удалось обратиться к Discord ({description}): {exc}"
                ) from exc
        raise ExternalOpError(
            f"Discord продолжает ограничивать запросы ({description})", status=429
        )

    def _choose_user_agent(self) -> str:
        return self._network.discord_user_agent or _DEFAULT_USER_AGENT

    def _build_proxy_auth(self) -> aiohttp.BasicAuth | None:
        login = self._network.discord_proxy_login
        password = self._network.discord_proxy_password
        if login:
            return aiohttp.BasicAuth(login, password or "")
        return None


class DiscordThread:
    """:class:`ThreadHandle` backed by the REST client.

    Flags are updated locally after each successful write, so snapshots
    held in the thread cache reflect what the bot already changed.
    """

    def __init__(self, client: DiscordClient, snapshot: ThreadSnapshot):
        self._client = client
        self._snapshot = snapshot

    def __repr__(self) -> str:
        return f"DiscordThread(id={self.id!r}, name={self.name!r})"

    @property
    def id(self) -> str:
        return self._snapshot.id

    @property
    def parent_id(self) -> str:
        return self._snapshot.parent_id

    @property
    def name(self) -> str:
        return self._snapshot.name

    @property
    def created_at(self) -> datetime:
        return self._snapshot.created_at

    @property
    def archived(self) -> bool:
        return self._snapshot.archived

    @property
    def locked(self) -> bool:
        return self._snapshot.locked

    async def set_archived(self, archived: bool) -> None:
        await self._client.modify_thread(self.id, archived=archived)
        self._snapshot.archived = archived

    async def set_locked(self, locked: bool) -> None:
        await self._client.modify_thread(self.id, locked=locked)
        self._snapshot.locked = locked

    async def send_message(self, text: str) -> None:
        await self._client.send_message(self.id, text)


class DiscordChannel:
    """Parent channel whose threads are rotated."""

    def __init__(self, client: DiscordClient, info: ChannelInfo):
        self._client = client
        self._info = info

    @property
    def id(self) -> str:
        return self._info.id

    @property
    def guild_id(self) -> str | None:
        return self._info.guild_id

    @property
    def name(self) -> str | None:
        return self._info.name

    async def fetch_active_threads(self) -> list[ThreadHandle]:
        if not self._info.guild_id:
            logger.warning("Канал %s не принадлежит серверу, активные треды недоступны", self.id)
            return []
        snapshots = await self._client.fetch_active_threads(self._info.guild_id, self.id)
        return [DiscordThread(self._client, snapshot) for snapshot in snapshots]

    async def fetch_archived_threads(self) -> list[ThreadHandle]:
        snapshots = await self._client.fetch_archived_threads(self.id)
        return [DiscordThread(self._client, snapshot) for snapshot in snapshots]


def _parse_threads_response(
    data: Mapping[str, Any], default_parent_id: str
) -> list[ThreadSnapshot]:
    threads_raw = data.get("threads") or []
    threads: list[ThreadSnapshot] = []
    for entry in threads_raw:
        if not isinstance(entry, Mapping):
            continue
        snapshot = parse_thread(entry, default_parent_id)
        if snapshot is not None:
            threads.append(snapshot)
    return threads


def _last_archive_timestamp(data: Mapping[str, Any]) -> str | None:
    threads_raw = data.get("threads") or []
    for entry in reversed(threads_raw):
        if not isinstance(entry, Mapping):
            continue
        metadata = entry.get("thread_metadata")
        if isinstance(metadata, Mapping) and metadata.get("archive_timestamp"):
            return str(metadata["archive_timestamp"])
    return None


async def _retry_after(resp: aiohttp.ClientResponse) -> float:
    try:
        payload = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        payload = None
    value: Any = None
    if isinstance(payload, Mapping):
        value = payload.get("retry_after")
    if value is None:
        value = resp.headers.get("Retry-After")
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 1.0

"""Minimal Discord gateway connection delivering dispatch events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import platform
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp

from .errors import AuthError, ExternalOpError
from .models import NetworkOptions

GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"
INTENT_GUILDS = 1 << 0

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

AUTH_FAILED_CLOSE_CODE = 4004
FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}
# not in FATAL_CLOSE_CODES, so run() reconnects
ZOMBIE_CLOSE_CODE = 4000

DispatchHandler = Callable[[str, Mapping[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: int | None = None
    t: str | None = None


def build_identify_payload(*, token: str, intents: int) -> dict[str, Any]:
    return {
        "op": OP_IDENTIFY,
        "d": {
            "token": token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "thread-rotator",
                "device": "thread-rotator",
            },
        },
    }


def parse_gateway_frame(frame: str | bytes | Mapping[str, Any]) -> GatewayFrame:
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8")
    try:
        payload = json.loads(frame) if isinstance(frame, str) else dict(frame)
    except ValueError as exc:
        raise ExternalOpError(f"Некорректный кадр gateway: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExternalOpError("Кадр gateway должен быть JSON-объектом")
    op = payload.get("op")
    if not isinstance(op, int):
        raise ExternalOpError(f"В кадре gateway нет числового op: {payload!r}")
    seq = payload.get("s")
    event_type = payload.get("t")
    return GatewayFrame(
        op=op,
        d=payload.get("d"),
        s=seq if isinstance(seq, int) else None,
        t=event_type if isinstance(event_type, str) else None,
    )


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    rand_float: Callable[[], float] = random.random,
) -> float:
    normalized_attempt = max(attempt, 0)
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    min_jitter = 0.8
    cap_threshold = math.ceil(math.log2(max_seconds / (base_seconds * min_jitter)))
    if normalized_attempt >= max(cap_threshold, 0):
        return max_seconds
    scaled = base_seconds * (2**normalized_attempt)
    jitter_factor = 0.8 + (0.4 * min(max(rand_float(), 0.0), 1.0))
    return min(max_seconds, max(0.0, scaled * jitter_factor))


def identify_token(token: str) -> str:
    """Gateway IDENTIFY expects the bare token without the REST prefix."""

    stripped = token.strip()
    if stripped.lower().startswith("bot "):
        return stripped[4:].strip()
    return stripped


class DiscordGateway:
    """Keep a gateway session alive and forward dispatch events."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        intents: int = INTENT_GUILDS,
        network: NetworkOptions | None = None,
        gateway_url: str | None = None,
    ):
        self._session = session
        self._token = identify_token(token)
        self._intents = intents
        self._network = network or NetworkOptions()
        self._gateway_url = gateway_url or GATEWAY_URL
        self._sequence: int | None = None
        self._last_heartbeat_sent: float | None = None
        self._last_heartbeat_ack: float | None = None
        self._stop_event = asyncio.Event()
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._websocket: aiohttp.ClientWebSocketResponse | None = None

    async def stop(self) -> None:
        self._stop_event.set()
        await self._cancel_heartbeat()
        if self._websocket is not None:
            with contextlib.suppress(aiohttp.ClientError, asyncio.TimeoutError):
                await self._websocket.close()

    async def run(self, on_dispatch: DispatchHandler) -> None:
        """Connect and reconnect until :meth:`stop` is called.

        Raises :class:`AuthError` when Discord closes the session with an
        unrecoverable code.
        """

        reconnect_attempt = 0
        while not self._stop_event.is_set():
            established = False
            try:
                async with self._session.ws_connect(
                    self._gateway_url,
                    proxy=self._network.discord_proxy_url,
                    proxy_auth=self._build_proxy_auth(),
                    max_msg_size=0,
                ) as websocket:
                    self._websocket = websocket
                    established = await self._run_connection(websocket, on_dispatch)
                    close_code = websocket.close_code
                if close_code in FATAL_CLOSE_CODES:
                    if close_code == AUTH_FAILED_CLOSE_CODE:
                        raise AuthError("Discord gateway отклонил токен (4004)")
                    raise AuthError(f"Discord gateway закрыл сессию с кодом {close_code}")
                if not self._stop_event.is_set():
                    logger.info("Соединение с gateway закрыто (%s), переподключение", close_code)
            except asyncio.CancelledError:
                raise
            except AuthError:
                raise
            except (
                aiohttp.ClientError,
                asyncio.TimeoutError,
                ExternalOpError,
                TypeError,
            ) as exc:
                logger.warning("Ошибка gateway, переподключение: %s", exc)
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            if established:
                reconnect_attempt = 0
            backoff = calculate_reconnect_backoff(reconnect_attempt)
            reconnect_attempt += 1
            await asyncio.sleep(backoff)

    async def _run_connection(
        self,
        websocket: aiohttp.ClientWebSocketResponse,
        on_dispatch: DispatchHandler,
    ) -> bool:
        hello = parse_gateway_frame(await websocket.receive_str())
        if hello.op != OP_HELLO:
            raise ExternalOpError("Gateway не прислал HELLO перед IDENTIFY")
        heartbeat_data = hello.d if isinstance(hello.d, dict) else {}
        heartbeat_ms = heartbeat_data.get("heartbeat_interval")
        if not isinstance(heartbeat_ms, (int, float)) or heartbeat_ms <= 0:
            raise ExternalOpError("В HELLO нет heartbeat_interval")

        self._last_heartbeat_sent = None
        self._last_heartbeat_ack = None
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(websocket, float(heartbeat_ms) / 1000.0),
            name="discord-gateway-heartbeat",
        )
        await websocket.send_json(
            build_identify_payload(token=self._token, intents=self._intents)
        )
        established = False

        async for message in websocket:
            if message.type not in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                break
            frame = parse_gateway_frame(message.data)
            if frame.s is not None:
                self._sequence = frame.s

            if frame.op == OP_DISPATCH:
                if frame.t == "READY":
                    established = True
                if frame.t and isinstance(frame.d, dict):
                    await on_dispatch(frame.t, frame.d)
                continue
            if frame.op == OP_HEARTBEAT:
                await websocket.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
                continue
            if frame.op == OP_HEARTBEAT_ACK:
                self._record_heartbeat_ack()
                continue
            if frame.op == OP_RECONNECT:
                logger.info("Gateway запросил переподключение")
                break
            if frame.op == OP_INVALID_SESSION:
                logger.warning("Gateway сообщил о недействительной сессии")
                self._sequence = None
                break

        return established

    async def _heartbeat_loop(
        self, websocket: aiohttp.ClientWebSocketResponse, interval_seconds: float
    ) -> None:
        # first beat is jittered as the gateway documentation asks
        await asyncio.sleep(interval_seconds * random.random())
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set() and not websocket.closed:
            if not self._heartbeat_acknowledged():
                # zombie connection: no ACK since the previous beat
                logger.warning("Gateway не подтвердил heartbeat, переподключение")
                await websocket.close(code=ZOMBIE_CLOSE_CODE)
                return
            self._last_heartbeat_sent = loop.time()
            await websocket.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
            await asyncio.sleep(interval_seconds)

    def _record_heartbeat_ack(self) -> None:
        self._last_heartbeat_ack = asyncio.get_running_loop().time()

    def _heartbeat_acknowledged(self) -> bool:
        if self._last_heartbeat_sent is None:
            return True
        return (
            self._last_heartbeat_ack is not None
            and self._last_heartbeat_ack >= self._last_heartbeat_sent
        )

    def _build_proxy_auth(self) -> aiohttp.BasicAuth | None:
        login = self._network.discord_proxy_login
        if login:
            return aiohttp.BasicAuth(login, self._network.discord_proxy_password or "")
        return None

    async def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        task = self._heartbeat_task
        self._heartbeat_task = None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            logger.debug("Задача heartbeat завершилась с ошибкой: %s", exc)

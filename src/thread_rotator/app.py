"""Application bootstrap for the thread rotator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, Protocol

import aiohttp

from .cache import ThreadSetCache, load_threads
from .config import BotSettings
from .discord import DiscordClient, DiscordThread, parse_thread
from .errors import ExhaustedRetries
from .executor import BatchExecutor, DeliveryLedger, ExecutionReport
from .gateway import DiscordGateway
from .models import ChannelHandle, ThreadCreated, ThreadHandle
from .reconciler import build_action_plan
from .retry import RetryPolicy, retry_async
from .utils import ChannelProcessingGuard, PerformanceMonitor, RateLimiter

logger = logging.getLogger(__name__)

_MIN_SWEEP_INTERVAL = 1.0


class ChannelSource(Protocol):
    async def fetch_channel(self, channel_id: str) -> ChannelHandle: ...


class ControllerState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"


class ThreadRotatorApp:
    """Close older sibling threads whenever a new one appears in the monitored channel."""

    def __init__(
        self,
        settings: BotSettings,
        *,
        cache: ThreadSetCache | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        executor: BatchExecutor | None = None,
        monitor: PerformanceMonitor | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        if cache is None:
            cache = ThreadSetCache(settings.cache_duration)
        if rate_limiter is None:
            rate_limiter = RateLimiter(settings.rate_limit_max_ops, settings.rate_limit_window)
        if retry_policy is None:
            retry_policy = RetryPolicy(
                max_attempts=settings.retry_max_attempts, delays=settings.retry_delays
            )
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._retry_policy = retry_policy
        self._executor = executor or BatchExecutor(
            self._rate_limiter,
            message_text=settings.message_text,
            batch_size=settings.batch_size,
            operation_delay=settings.operation_delay,
        )
        self._monitor = monitor or PerformanceMonitor()
        self._retry_sleep = retry_sleep
        self._channel_guard = ChannelProcessingGuard() if settings.serialize_events else None
        self._queue: asyncio.Queue[ThreadCreated] = asyncio.Queue()
        self._tasks: set[asyncio.Task[ExecutionReport | None]] = set()
        self._in_flight = 0
        self._ready = asyncio.Event()
        self.last_thread_id: str | None = None

    @property
    def state(self) -> ControllerState:
        return ControllerState.PROCESSING if self._in_flight else ControllerState.IDLE

    @property
    def cache(self) -> ThreadSetCache:
        return self._cache

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def queue(self) -> asyncio.Queue[ThreadCreated]:
        return self._queue

    @property
    def ready(self) -> asyncio.Event:
        return self._ready

    async def run(self) -> None:
        """Log in, then serve gateway events until cancelled.

        :class:`~thread_rotator.errors.AuthError` propagates to the caller.
        """

        network = self._settings.network
        async with aiohttp.ClientSession() as session:
            client = DiscordClient(session, self._settings.token, network=network)
            user = await client.fetch_current_user()
            logger.info("Бот авторизован как %s (%s)", user.username, user.id)
            gateway = DiscordGateway(session, client.token, network=network)
            await self.serve(client, gateway)

    async def serve(self, client: DiscordClient, gateway: DiscordGateway) -> None:
        async def on_dispatch(event_type: str, payload: Mapping[str, Any]) -> None:
            await self._on_dispatch(client, event_type, payload)

        consumer_task = asyncio.create_task(
            self._supervise("event-consumer", lambda: self._consume(client)),
            name="event-consumer-supervisor",
        )
        maintenance_task = asyncio.create_task(
            self._supervise("maintenance", self._maintenance_loop),
            name="maintenance-supervisor",
        )
        try:
            await gateway.run(on_dispatch)
        finally:
            await gateway.stop()
            await self.shutdown(consumer_task, maintenance_task)

    async def shutdown(self, *tasks: asyncio.Task[Any]) -> None:
        pending = [*tasks, *self._tasks]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Обработчики событий остановлены")

    async def _on_dispatch(
        self, client: DiscordClient, event_type: str, payload: Mapping[str, Any]
    ) -> None:
        if event_type == "READY":
            user = payload.get("user")
            name = user.get("username") if isinstance(user, Mapping) else None
            logger.info("Gateway готов, пользователь %s", name or "?")
            self._ready.set()
            return
        if event_type != "THREAD_CREATE":
            return
        snapshot = parse_thread(payload)
        if snapshot is None:
            logger.debug("Пропуск THREAD_CREATE без корректных данных: %r", payload)
            return
        await self._queue.put(
            ThreadCreated(thread=DiscordThread(client, snapshot), guild_id=snapshot.guild_id)
        )

    async def _consume(self, source: ChannelSource) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.dispatch(event, source)
            finally:
                self._queue.task_done()

    def dispatch(
        self, event: ThreadCreated, source: ChannelSource
    ) -> asyncio.Task[ExecutionReport | None]:
        """Start processing ``event`` without waiting for earlier events."""

        task = asyncio.create_task(
            self.handle_thread_created(event, source),
            name=f"thread-create-{event.thread.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_thread_created(
        self, event: ThreadCreated, source: ChannelSource
    ) -> ExecutionReport | None:
        """Process one thread creation; never raises except on cancellation."""

        thread = event.thread
        channel_id = self._settings.channel_id
        if thread.parent_id != channel_id:
            logger.debug(
                "Тред %s создан в канале %s, а не в отслеживаемом", thread.id, thread.parent_id
            )
            return None

        logger.info("Новый тред %s (%s) в канале %s", thread.name, thread.id, channel_id)
        operation = f"thread-processing:{thread.id}"
        self._monitor.start(operation)
        self._in_flight += 1
        ledger = DeliveryLedger()
        try:
            if self._channel_guard is not None:
                async with self._channel_guard.lock(channel_id):
                    return await self._process_with_retry(thread, source, ledger)
            return await self._process_with_retry(thread, source, ledger)
        except ExhaustedRetries as exc:
            logger.error(
                "Тред %s не обработан после %d попыток: %s",
                thread.id,
                exc.attempts,
                exc.last_error,
            )
            return None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Непредвиденная ошибка при обработке треда %s", thread.id)
            return None
        finally:
            self._in_flight -= 1
            self.last_thread_id = thread.id
            logger.info("Последний обработанный тред: %s", thread.id)
            self._monitor.end(operation)

    async def _process_with_retry(
        self, thread: ThreadHandle, source: ChannelSource, ledger: DeliveryLedger
    ) -> ExecutionReport:
        return await retry_async(
            lambda: self._reconcile(thread, source, ledger),
            self._retry_policy,
            description=f"ротация после треда {thread.id}",
            sleep=self._retry_sleep,
        )

    async def _reconcile(
        self, trigger: ThreadHandle, source: ChannelSource, ledger: DeliveryLedger
    ) -> ExecutionReport:
        channel = await source.fetch_channel(self._settings.channel_id)
        threads = await load_threads(self._cache, channel)
        if all(known.id != trigger.id for known in threads):
            # cached snapshots predate the trigger
            self._cache.add(channel.id, trigger)
            threads = [*threads, trigger]

        plan = build_action_plan(threads, trigger.id)
        if plan.is_empty:
            logger.info("Нет тредов для блокировки в канале %s", channel.id)
            return ExecutionReport()

        recipient = plan.message_recipient
        logger.info(
            "К блокировке %d тредов, сообщение получит %s",
            len(plan),
            recipient.name if recipient is not None else "-",
        )
        report = await self._executor.execute(plan, ledger=ledger)
        logger.info("Тред %s обработан: %s", trigger.id, report.summary())
        return report

    def sweep(self) -> tuple[int, int]:
        expired = self._cache.sweep()
        idle = self._rate_limiter.sweep()
        if expired or idle:
            logger.debug(
                "Очистка: %d записей кэша, %d записей лимитов", expired, idle
            )
        return expired, idle

    async def _maintenance_loop(self) -> None:
        interval = max(_MIN_SWEEP_INTERVAL, self._settings.sweep_interval)
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Задача %s остановлена", name)
                raise
            except Exception:
                logger.exception("Задача %s завершилась с ошибкой", name)
            else:
                logger.warning("Задача %s завершилась неожиданно, будет перезапущена", name)
            await asyncio.sleep(retry_delay)

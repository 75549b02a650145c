"""Apply an action plan to Discord threads in paced concurrent batches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .models import ActionPlan, PlannedAction, ThreadAction
from .utils import RateLimiter

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Threads that already received the redirect message during one event."""

    def __init__(self) -> None:
        self._delivered: set[str] = set()

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._delivered

    def __len__(self) -> int:
        return len(self._delivered)

    def record(self, thread_id: str) -> None:
        self._delivered.add(thread_id)


@dataclass(slots=True)
class ExecutionReport:
    """Outcome counters of one plan execution."""

    unarchived: list[str] = field(default_factory=list)
    messaged: list[str] = field(default_factory=list)
    locked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"разархивировано {len(self.unarchived)}, сообщений {len(self.messaged)}, "
            f"заблокировано {len(self.locked)}, ошибок {len(self.failed)}, "
            f"пропущено {len(self.skipped)}"
        )


class BatchExecutor:
    """Run planned actions with bounded concurrency and per-thread rate limiting."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        *,
        message_text: str,
        batch_size: int = 5,
        operation_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._rate_limiter = rate_limiter
        self._message_text = message_text
        self._batch_size = max(1, batch_size)
        self._operation_delay = max(0.0, operation_delay)
        self._sleep = sleep

    async def execute(
        self,
        plan: ActionPlan,
        *,
        ledger: DeliveryLedger | None = None,
    ) -> ExecutionReport:
        report = ExecutionReport()
        if plan.is_empty:
            return report
        ledger = ledger if ledger is not None else DeliveryLedger()
        processed: set[str] = set()
        entries = list(plan)
        for start in range(0, len(entries), self._batch_size):
            batch: list[PlannedAction] = []
            for entry in entries[start : start + self._batch_size]:
                thread_id = entry.thread.id
                if thread_id == plan.trigger_id or thread_id in processed:
                    report.skipped.append(thread_id)
                    continue
                processed.add(thread_id)
                batch.append(entry)
            await asyncio.gather(
                *(self._apply(entry, report, ledger) for entry in batch)
            )
        return report

    async def _apply(
        self,
        entry: PlannedAction,
        report: ExecutionReport,
        ledger: DeliveryLedger,
    ) -> None:
        thread = entry.thread
        for action in entry.ordered_actions():
            if action is ThreadAction.UNARCHIVE:
                if not thread.archived:
                    continue
                logger.info("Разархивирование треда %s (%s)", thread.name, thread.id)
                unarchived = await self._call(
                    thread.id, "разархивировать", lambda: thread.set_archived(False)
                )
                if not unarchived:
                    # locking an archived thread fails as well
                    report.failed.append(thread.id)
                    return
                report.unarchived.append(thread.id)
            elif action is ThreadAction.SEND_MESSAGE:
                if thread.id in ledger:
                    logger.info(
                        "Сообщение в тред %s уже отправлено в этом событии", thread.id
                    )
                    continue
                logger.info("Отправка сообщения во второй по новизне тред %s", thread.name)
                sent = await self._call(
                    thread.id,
                    "отправить сообщение в",
                    lambda: thread.send_message(self._message_text),
                )
                if sent:
                    ledger.record(thread.id)
                    report.messaged.append(thread.id)
                else:
                    report.failed.append(thread.id)
            elif action is ThreadAction.LOCK:
                if thread.locked:
                    continue
                logger.info("Блокировка треда %s (%s)", thread.name, thread.id)
                locked = await self._call(
                    thread.id, "заблокировать", lambda: thread.set_locked(True)
                )
                if locked:
                    report.locked.append(thread.id)
                elif thread.id not in report.failed:
                    report.failed.append(thread.id)

    async def _call(
        self,
        thread_id: str,
        verb: str,
        operation: Callable[[], Awaitable[None]],
    ) -> bool:
        await self._rate_limiter.wait(thread_id)
        try:
            await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Не удалось %s тред %s: %s", verb, thread_id, exc)
            ok = False
        else:
            ok = True
        if self._operation_delay > 0:
            await self._sleep(self._operation_delay)
        return ok

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from thread_rotator.errors import ExternalOpError
from thread_rotator.executor import BatchExecutor, DeliveryLedger
from thread_rotator.models import ActionPlan, PlannedAction, ThreadAction
from thread_rotator.reconciler import build_action_plan
from thread_rotator.utils import RateLimiter

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


@dataclass
class DummyThread:
    id: str
    created: int
    archived: bool = False
    locked: bool = False
    fail_on: set[str] = field(default_factory=set)
    calls: list[str] = field(default_factory=list)
    parent_id: str = "100"

    @property
    def name(self) -> str:
        return f"thread-{self.id}"

    @property
    def created_at(self) -> datetime:
        return _BASE + timedelta(seconds=self.created)

    async def set_archived(self, archived: bool) -> None:
        await asyncio.sleep(0)
        if "archive" in self.fail_on:
            raise ExternalOpError("archive failed")
        self.calls.append("unarchive")
        self.archived = archived

    async def set_locked(self, locked: bool) -> None:
        await asyncio.sleep(0)
        if "lock" in self.fail_on:
            raise ExternalOpError("lock failed")
        self.calls.append("lock")
        self.locked = locked

    async def send_message(self, text: str) -> None:
        await asyncio.sleep(0)
        if "message" in self.fail_on:
            raise ExternalOpError("message failed")
        self.calls.append(f"message:{text}")


class RecordingLimiter(RateLimiter):
    def __init__(self) -> None:
        super().__init__(100, 10.0)
        self.waits: list[str] = []

    async def wait(self, key: str) -> None:
        self.waits.append(key)
        await super().wait(key)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _executor(
    limiter: RateLimiter | None = None,
    *,
    batch_size: int = 5,
    sleep: RecordingSleep | None = None,
) -> BatchExecutor:
    return BatchExecutor(
        limiter or RateLimiter(100, 10.0),
        message_text="Moved to the new thread",
        batch_size=batch_size,
        operation_delay=0.05,
        sleep=sleep or RecordingSleep(),
    )


def test_actions_are_applied_in_order() -> None:
    archived = DummyThread("1", created=1, archived=True)
    older = DummyThread("0", created=0)
    trigger = DummyThread("2", created=2)
    plan = build_action_plan([older, archived, trigger], trigger.id)

    report = asyncio.run(_executor().execute(plan))

    assert archived.calls == ["unarchive", "message:Moved to the new thread", "lock"]
    assert older.calls == ["lock"]
    assert trigger.calls == []
    assert report.messaged == ["1"]
    assert sorted(report.locked) == ["0", "1"]
    assert report.unarchived == ["1"]
    assert report.failed == []


def test_rate_limiter_and_pacing_gate_every_write() -> None:
    limiter = RecordingLimiter()
    sleep = RecordingSleep()
    thread = DummyThread("1", created=1, archived=True)
    plan = build_action_plan([thread, DummyThread("2", created=2)], "2")

    asyncio.run(_executor(limiter, sleep=sleep).execute(plan))

    assert limiter.waits == ["1", "1", "1"]
    assert sleep.delays == [0.05, 0.05, 0.05]


def test_failures_are_isolated_per_thread() -> None:
    broken = DummyThread("3", created=3, fail_on={"lock"})
    unreachable = DummyThread("2", created=2, archived=True, fail_on={"archive"})
    healthy = DummyThread("1", created=1)
    trigger = DummyThread("4", created=4)
    plan = build_action_plan([broken, unreachable, healthy, trigger], trigger.id)

    report = asyncio.run(_executor().execute(plan))

    assert broken.calls == ["message:Moved to the new thread"]
    assert unreachable.calls == []
    assert healthy.calls == ["lock"]
    assert sorted(report.failed) == ["2", "3"]
    assert report.locked == ["1"]


def test_failed_message_still_locks_thread() -> None:
    recipient = DummyThread("1", created=1, fail_on={"message"})
    plan = build_action_plan([recipient, DummyThread("2", created=2)], "2")

    report = asyncio.run(_executor().execute(plan))

    assert recipient.calls == ["lock"]
    assert report.failed == ["1"]
    assert report.locked == ["1"]


def test_ledger_suppresses_repeated_message() -> None:
    recipient = DummyThread("1", created=1)
    plan = build_action_plan([recipient, DummyThread("2", created=2)], "2")
    ledger = DeliveryLedger()
    ledger.record("1")

    report = asyncio.run(_executor().execute(plan, ledger=ledger))

    assert recipient.calls == ["lock"]
    assert report.messaged == []


def test_duplicate_entries_are_processed_once() -> None:
    thread = DummyThread("1", created=1)
    plan = ActionPlan(
        trigger_id="9",
        entries=[
            PlannedAction(thread, frozenset({ThreadAction.SEND_MESSAGE, ThreadAction.LOCK})),
            PlannedAction(thread, frozenset({ThreadAction.LOCK})),
        ],
    )

    report = asyncio.run(_executor().execute(plan))

    assert thread.calls == ["message:Moved to the new thread", "lock"]
    assert report.skipped == ["1"]


def test_batches_run_sequentially_with_bounded_concurrency() -> None:
    running = 0
    peak = 0
    finished_batches: list[list[str]] = []

    class SlowThread(DummyThread):
        async def set_locked(self, locked: bool) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            self.calls.append("lock")
            finished_batches.append([self.id])

    threads = [SlowThread(str(index), created=index) for index in range(1, 8)]
    trigger = DummyThread("99", created=99)
    plan = build_action_plan([*threads, trigger], trigger.id)

    report = asyncio.run(_executor(batch_size=3).execute(plan))

    assert peak == 3
    assert len(report.locked) == 7
    first_batch = {thread.id for thread in plan.entries[:3]}
    assert {ids[0] for ids in finished_batches[:3]} == first_batch


def test_empty_plan_does_nothing() -> None:
    report = asyncio.run(_executor().execute(ActionPlan(trigger_id="1")))
    assert report.summary().startswith("разархивировано 0")

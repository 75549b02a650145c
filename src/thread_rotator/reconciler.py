"""Decide which sibling threads to close when a new thread appears.

Only unlocked threads take part: locked ones were handled by an earlier
run and are left alone. The unlocked set is ordered newest first, with the
snowflake id breaking ties so repeated runs over one snapshot agree. The
trigger thread stays open; every other unlocked thread is unarchived when
needed and locked, and the newest of them additionally receives the
redirect message.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .models import ActionPlan, PlannedAction, ThreadAction, ThreadHandle
from .utils import snowflake_sort_key

logger = logging.getLogger(__name__)

MIN_UNLOCKED_THREADS = 2


def order_threads(threads: Sequence[ThreadHandle]) -> list[ThreadHandle]:
    """Return ``threads`` sorted newest first."""

    return sorted(
        threads,
        key=lambda thread: (thread.created_at, snowflake_sort_key(thread.id)),
        reverse=True,
    )


def build_action_plan(threads: Sequence[ThreadHandle], trigger_id: str) -> ActionPlan:
    plan = ActionPlan(trigger_id=trigger_id)
    unlocked = order_threads([thread for thread in threads if not thread.locked])
    if len(unlocked) < MIN_UNLOCKED_THREADS:
        logger.debug(
            "Незаблокированных тредов %d, действий не требуется", len(unlocked)
        )
        return plan

    recipient_chosen = False
    for thread in unlocked:
        if thread.id == trigger_id:
            continue
        actions = {ThreadAction.LOCK}
        if thread.archived:
            actions.add(ThreadAction.UNARCHIVE)
        if not recipient_chosen:
            actions.add(ThreadAction.SEND_MESSAGE)
            recipient_chosen = True
        plan.entries.append(PlannedAction(thread=thread, actions=frozenset(actions)))
    return plan

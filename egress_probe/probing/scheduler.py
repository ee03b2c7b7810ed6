"""Bounded-concurrency runner for per-node probe tasks.

The queue holds one task per (node, task factory) pair. ``concurrency_limit``
workers pull from it inside an ``asyncio.TaskGroup``, so no more than that
many tasks are ever unresolved, and a finished task immediately admits the
next one. A failing task is logged and counted; it never stops the queue.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Generic, Sequence, Tuple, TypeVar

LOGGER = logging.getLogger(__name__)

NodeT = TypeVar("NodeT")
TaskFactory = Callable[[NodeT], Awaitable[object]]


@dataclass
class ScheduleReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0


class ProbeScheduler(Generic[NodeT]):
    """Run ``len(nodes) * len(task_factories)`` tasks, at most N at a time."""

    def __init__(self, concurrency_limit: int) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self._limit = concurrency_limit

    async def run(
        self,
        nodes: Sequence[NodeT],
        task_factories: Sequence[TaskFactory],
    ) -> ScheduleReport:
        """Drain the queue of tasks and report how many succeeded or failed."""
        queue: Deque[Tuple[NodeT, TaskFactory]] = deque(
            (node, factory) for node in nodes for factory in task_factories
        )
        report = ScheduleReport(total=len(queue))
        if not queue:
            return report

        async def worker() -> None:
            while queue:
                node, factory = queue.popleft()
                try:
                    await factory(node)
                except Exception:  # noqa: BLE001 - one task must not stop the others
                    report.failed += 1
                    LOGGER.exception("probe task %s failed for %r", getattr(factory, "__name__", factory), node)
                else:
                    report.succeeded += 1

        async with asyncio.TaskGroup() as group:
            for _ in range(min(self._limit, report.total)):
                group.create_task(worker())

        LOGGER.debug(
            "scheduler drained %d tasks (ok=%d failed=%d, limit=%d)",
            report.total,
            report.succeeded,
            report.failed,
            self._limit,
        )
        return report


__all__ = ["ProbeScheduler", "ScheduleReport", "TaskFactory"]

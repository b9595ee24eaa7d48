from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Set

from lankaqr.logging import get_logger

logger = get_logger(__name__)


class CleanupQueue:
    """Background queue for best-effort cleanup work.

    Jobs run as detached asyncio tasks. A failed job is logged and dropped;
    it never propagates to the request that scheduled it. ``drain`` waits for
    everything scheduled so far (used at shutdown and by tests).
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, label: str, job: Callable[[], Awaitable[None]]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(label, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, label: str, job: Callable[[], Awaitable[None]]) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed += 1
            logger.warning(
                "cleanup_job_failed",
                job=label,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

"""Fire-and-forget work that outlives the Slack acknowledgment."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

from ...error_logging import AppErrorLogger

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Spawns coroutines that are intentionally not awaited by their caller.

    Each spawned coroutine runs inside an error boundary: failures are logged
    (and recorded in the error sink) and never propagate. Strong references are
    kept until completion so the event loop cannot garbage-collect them.
    """

    def __init__(self, *, error_logger: Optional[AppErrorLogger] = None) -> None:
        self._error_logger = error_logger
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(self._guard(coro, label), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled", label)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Background task %s failed: %s", label, exc, exc_info=True)
            if self._error_logger is not None:
                try:
                    await asyncio.to_thread(
                        self._error_logger.log_best_effort_failure,
                        operation=label,
                        error=exc,
                    )
                except Exception:  # noqa: BLE001
                    pass  # Never let the error sink break the boundary

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every spawned task, including ones spawned while draining."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            self._tasks.difference_update(done)
            if not_done:
                logger.warning("%d background task(s) still running after drain timeout", len(not_done))
                return

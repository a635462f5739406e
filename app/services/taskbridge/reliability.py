"""Reliability primitives for the task bridge.

Provides:
1. Retry/backoff wrapper for flaky calls (database mirror writes)
2. Orphan detection event emitter via ``taskbridge_events``
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..wrike import WrikeTask

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRY_ATTEMPTS = 3
_BASE_BACKOFF_S = 0.5


# ---------------------------------------------------------------------------
# 1) Retry / backoff wrapper
# ---------------------------------------------------------------------------


class RetryExhaustedError(Exception):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All {attempts} attempts failed. Last error: {last_error}")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = _MAX_RETRY_ATTEMPTS,
    base_backoff_s: float = _BASE_BACKOFF_S,
    retryable: tuple[type[Exception], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Execute ``fn`` with exponential backoff on retryable failures.

    Returns the result on success, or raises ``RetryExhaustedError`` after
    ``max_attempts`` failures.  Non-retryable exceptions propagate immediately.
    """
    last_exc: Exception | None = None
    backoff = base_backoff_s
    max_attempts = max(1, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except retryable as exc:
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.info(
                "Retry %s %d/%d after %s: %s",
                label,
                attempt,
                max_attempts,
                type(exc).__name__,
                exc,
            )
            await asyncio.sleep(backoff)
            backoff *= 2

    raise RetryExhaustedError(max_attempts, last_exc)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# 2) Orphan detection
# ---------------------------------------------------------------------------


def emit_orphan_event(
    db: Any,
    *,
    wrike_task: WrikeTask | None,
    task_id: str,
    channel_id: str | None = None,
    requested_by: str | None = None,
    error: str,
) -> None:
    """Record a ``wrike_orphan`` event in ``taskbridge_events``.

    Called when the Wrike task exists but the local mirror write failed.

    Synchronous; callers should wrap in ``asyncio.to_thread`` from async code.
    """
    payload: dict[str, Any] = {
        "task_id": task_id,
        "error": error,
    }
    if wrike_task:
        payload["wrike_task_id"] = wrike_task.id
        if wrike_task.permalink:
            payload["wrike_permalink"] = wrike_task.permalink

    row: dict[str, Any] = {
        "event_type": "wrike_orphan",
        "payload": payload,
    }
    if channel_id:
        row["channel_id"] = channel_id
    if requested_by:
        row["slack_user_id"] = requested_by

    try:
        db.table("taskbridge_events").insert(row).execute()
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to emit orphan event: %s", exc)

"""Task mirror storage.

``SupabaseTaskStore`` is the durable backend, ``InMemoryTaskStore`` is a
per-process map that only lives as long as the running instance, and
``ResilientTaskStore`` puts the two behind one interface so the workflow never
knows which one answered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from supabase import Client

from .models import Task
from .reliability import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MUTABLE_FIELDS = {
    "title",
    "description",
    "status",
    "previous_status",
    "start_date",
    "due_date",
    "assignee_user_id",
    "assignee_display_name",
    "channel_message",
    "user_message",
    "assignee_message",
}


class TaskStoreError(Exception):
    pass


class TaskStoreUnavailableError(TaskStoreError):
    pass


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
    return dict(changes)


def _rows(response: Any) -> list[dict[str, Any]]:
    data = getattr(response, "data", None)
    return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []


class InMemoryTaskStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def find_by_wrike_id(self, wrike_id: str) -> Optional[Task]:
        for task in self._tasks.values():
            if task.wrike_id == wrike_id:
                return task
        return None

    async def list_tasks(
        self,
        channel_id: str,
        *,
        assignee_user_id: str | None = None,
        limit: int = 20,
    ) -> list[Task]:
        matches = [
            task
            for task in self._tasks.values()
            if task.channel_id == channel_id and (assignee_user_id is None or task.assignee_user_id == assignee_user_id)
        ]
        matches.sort(key=lambda task: task.created_at or "", reverse=True)
        return matches[:limit]

    async def save_task(self, task: Task) -> Task:
        now = _utc_now_iso()
        existing = self._tasks.get(task.task_id)
        stored = replace(
            task,
            created_at=task.created_at or (existing.created_at if existing else None) or now,
            updated_at=now,
        )
        self._tasks[task.task_id] = stored
        return stored

    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        changes = _clean_changes(changes)
        task = self._tasks.get(task_id)
        if task is None:
            return None
        updated = replace(task, **changes, updated_at=_utc_now_iso())
        self._tasks[task_id] = updated
        return updated


class SupabaseTaskStore:
    """Durable task mirror in a Supabase (PostgREST) table.

    The Supabase client is synchronous, so every call runs in a worker thread
    with its own timeout. The client is created lazily; concurrent callers
    share one in-flight connection attempt.
    """

    backend_name = "supabase"

    def __init__(
        self,
        client_factory: Callable[[], Client],
        *,
        table: str = "wrike_tasks",
        timeout_s: float = 10.0,
        max_attempts: int = 3,
        backoff_s: float = 0.5,
    ) -> None:
        self._client_factory = client_factory
        self.table = table
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s

        self._client: Optional[Client] = None
        self._connecting: Optional[asyncio.Future[Client]] = None

    async def _connect(self) -> Client:
        client = await asyncio.wait_for(asyncio.to_thread(self._client_factory), self.timeout_s)
        await asyncio.wait_for(
            asyncio.to_thread(lambda: client.table(self.table).select("task_id").limit(1).execute()),
            self.timeout_s,
        )
        logger.info("Connected to Supabase task table %s", self.table)
        return client

    async def get_client(self) -> Client:
        if self._client is not None:
            return self._client

        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
        pending = self._connecting
        try:
            client = await asyncio.shield(pending)
        except Exception:
            if self._connecting is pending:
                self._connecting = None
            raise
        self._client = client
        self._connecting = None
        return client

    def reset(self) -> None:
        self._client = None
        self._connecting = None

    async def _execute(self, label: str, op: Callable[[Client], Any]) -> Any:
        async def _attempt() -> Any:
            client = await self.get_client()
            return await asyncio.wait_for(asyncio.to_thread(op, client), self.timeout_s)

        try:
            return await retry_with_backoff(
                _attempt,
                max_attempts=self.max_attempts,
                base_backoff_s=self.backoff_s,
                label=f"task store {label}",
            )
        except RetryExhaustedError as exc:
            self.reset()
            raise TaskStoreUnavailableError(f"Task store {label} failed: {exc.last_error}") from exc.last_error

    async def get_task(self, task_id: str) -> Optional[Task]:
        response = await self._execute(
            "get",
            lambda db: db.table(self.table).select("*").eq("task_id", task_id).limit(1).execute(),
        )
        rows = _rows(response)
        return Task.from_row(rows[0]) if rows else None

    async def find_by_wrike_id(self, wrike_id: str) -> Optional[Task]:
        response = await self._execute(
            "find",
            lambda db: db.table(self.table).select("*").eq("wrike_id", wrike_id).limit(1).execute(),
        )
        rows = _rows(response)
        return Task.from_row(rows[0]) if rows else None

    async def list_tasks(
        self,
        channel_id: str,
        *,
        assignee_user_id: str | None = None,
        limit: int = 20,
    ) -> list[Task]:
        def _query(db: Client) -> Any:
            query = db.table(self.table).select("*").eq("channel_id", channel_id)
            if assignee_user_id:
                query = query.eq("assignee_user_id", assignee_user_id)
            return query.order("created_at", desc=True).limit(limit).execute()

        response = await self._execute("list", _query)
        return [Task.from_row(row) for row in _rows(response)]

    async def save_task(self, task: Task) -> Task:
        now = _utc_now_iso()
        row = task.to_row()
        row["created_at"] = task.created_at or now
        row["updated_at"] = now
        response = await self._execute(
            "save",
            lambda db: db.table(self.table).upsert(row, on_conflict="task_id").execute(),
        )
        rows = _rows(response)
        return Task.from_row(rows[0]) if rows else Task.from_row(row)

    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        changes = _clean_changes(changes)
        updates = Task(task_id=task_id, wrike_id="", title="", **changes).to_row()
        updates = {key: updates[key] for key in changes}
        updates["updated_at"] = _utc_now_iso()
        response = await self._execute(
            "update",
            lambda db: db.table(self.table).update(updates).eq("task_id", task_id).execute(),
        )
        rows = _rows(response)
        return Task.from_row(rows[0]) if rows else None


class ResilientTaskStore:
    """Durable store with an in-memory fallback and a reconnection cooldown."""

    def __init__(
        self,
        primary: Optional[SupabaseTaskStore],
        fallback: InMemoryTaskStore | None = None,
        *,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.primary = primary
        self.fallback = fallback or InMemoryTaskStore()
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._last_failure_at: Optional[float] = None

    @property
    def backend_name(self) -> str:
        if self.primary is None or self._in_cooldown():
            return self.fallback.backend_name
        return self.primary.backend_name

    def _in_cooldown(self) -> bool:
        if self._last_failure_at is None:
            return False
        return (self._clock() - self._last_failure_at) < self.cooldown_s

    async def _route(
        self,
        label: str,
        primary_fn: Callable[[], Awaitable[T]],
        fallback_fn: Callable[[], Awaitable[T]],
    ) -> T:
        if self.primary is None:
            return await fallback_fn()
        if self._in_cooldown():
            logger.debug("Task store on cooldown, using in-memory store for %s", label)
            return await fallback_fn()
        try:
            result = await primary_fn()
        except TaskStoreError as exc:
            self._last_failure_at = self._clock()
            logger.warning("Task store unavailable for %s (%s), using in-memory store", label, exc)
            return await fallback_fn()
        self._last_failure_at = None
        return result

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = await self._route(
            "get",
            lambda: self.primary.get_task(task_id),
            lambda: self.fallback.get_task(task_id),
        )
        return task or await self.fallback.get_task(task_id)

    async def find_by_wrike_id(self, wrike_id: str) -> Optional[Task]:
        task = await self._route(
            "find",
            lambda: self.primary.find_by_wrike_id(wrike_id),
            lambda: self.fallback.find_by_wrike_id(wrike_id),
        )
        return task or await self.fallback.find_by_wrike_id(wrike_id)

    async def list_tasks(
        self,
        channel_id: str,
        *,
        assignee_user_id: str | None = None,
        limit: int = 20,
    ) -> list[Task]:
        return await self._route(
            "list",
            lambda: self.primary.list_tasks(channel_id, assignee_user_id=assignee_user_id, limit=limit),
            lambda: self.fallback.list_tasks(channel_id, assignee_user_id=assignee_user_id, limit=limit),
        )

    async def save_task(self, task: Task) -> Task:
        return await self._route(
            "save",
            lambda: self.primary.save_task(task),
            lambda: self.fallback.save_task(task),
        )

    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        task = await self._route(
            "update",
            lambda: self.primary.update_task(task_id, **changes),
            lambda: self.fallback.update_task(task_id, **changes),
        )
        return task or await self.fallback.update_task(task_id, **changes)

"""Explicit construction of the task bridge from settings.

Nothing here performs network I/O: the Supabase client connects lazily on the
first store call, and the HTTP clients open their pools on first request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from supabase import Client, create_client

from ...config import Settings
from ...error_logging import AppErrorLogger
from ..slack import get_slack_service
from ..wrike import get_wrike_service
from .background import BackgroundRunner
from .orchestrator import TaskWorkflowOrchestrator
from .runtime_deps import InteractionRouterDeps, WorkflowConfig
from .task_store import InMemoryTaskStore, ResilientTaskStore, SupabaseTaskStore

logger = logging.getLogger(__name__)


@dataclass
class TaskBridge:
    slack: Any
    wrike: Any
    store: Any
    runner: BackgroundRunner
    orchestrator: TaskWorkflowOrchestrator
    router_deps: InteractionRouterDeps

    async def aclose(self, *, drain_timeout: Optional[float] = 10.0) -> None:
        await self.runner.drain(timeout=drain_timeout)
        await self.slack.aclose()
        await self.wrike.aclose()


def build_workflow_config(settings: Settings) -> WorkflowConfig:
    return WorkflowConfig(
        default_folder_id=settings.wrike_default_folder_id,
        channel_folder_map=dict(settings.wrike_channel_folder_map),
        fallback_channel_id=settings.slack_task_channel_id,
        permalink_base=settings.wrike_permalink_base,
        assignee_field_id=settings.wrike_assignee_field_id,
        description_field_id=settings.wrike_description_field_id,
        custom_status_ids=dict(settings.wrike_custom_status_ids),
        lookup_scan_limit=settings.wrike_lookup_scan_limit,
        notify_on_date_failure=settings.notify_on_date_failure,
    )


def build_task_store(settings: Settings) -> tuple[ResilientTaskStore, Optional[Client]]:
    """Return the task store and the Supabase client used for orphan events, if any."""
    if not settings.supabase_url or not settings.supabase_service_role:
        logger.warning("Supabase is not configured; the task mirror is in-memory only")
        return ResilientTaskStore(None, InMemoryTaskStore(), cooldown_s=settings.store_cooldown_s), None

    client = create_client(settings.supabase_url, settings.supabase_service_role)
    primary = SupabaseTaskStore(
        lambda: client,
        table=settings.tasks_table,
        timeout_s=settings.store_timeout_s,
        max_attempts=settings.store_max_attempts,
        backoff_s=settings.store_backoff_s,
    )
    store = ResilientTaskStore(primary, InMemoryTaskStore(), cooldown_s=settings.store_cooldown_s)
    return store, client


def build_task_bridge(
    settings: Settings,
    *,
    slack: Any | None = None,
    wrike: Any | None = None,
    store: Any | None = None,
    error_sink: AppErrorLogger | None = None,
) -> TaskBridge:
    slack = slack or get_slack_service(settings)
    wrike = wrike or get_wrike_service(settings)
    orphan_db: Optional[Client] = None
    if store is None:
        store, orphan_db = build_task_store(settings)
    error_sink = error_sink or AppErrorLogger(settings)

    runner = BackgroundRunner(error_logger=error_sink)
    orchestrator = TaskWorkflowOrchestrator(
        slack=slack,
        wrike=wrike,
        store=store,
        runner=runner,
        config=build_workflow_config(settings),
        error_sink=error_sink,
        orphan_db=orphan_db,
    )
    router_deps = InteractionRouterDeps(
        orchestrator=orchestrator,
        slack=slack,
        runner=runner,
        logger=logging.getLogger("app.services.taskbridge.interactions"),
    )
    return TaskBridge(
        slack=slack,
        wrike=wrike,
        store=store,
        runner=runner,
        orchestrator=orchestrator,
        router_deps=router_deps,
    )

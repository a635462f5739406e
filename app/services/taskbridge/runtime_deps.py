"""Typed dependency containers for the task bridge runtime layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import Logger
from typing import Any, Mapping, Optional, Protocol

from ..slack import SlackMessageResponse
from ..wrike import WrikeTask
from .models import Task


class SlackClientProtocol(Protocol):
    async def post_message(self, *, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> SlackMessageResponse: ...
    async def post_ephemeral(self, *, channel: str, user: str, text: str) -> Any: ...
    async def update_message(self, *, channel: str, ts: str, text: str, blocks: list[dict[str, Any]] | None = None) -> SlackMessageResponse: ...
    async def open_view(self, *, trigger_id: str, view: dict[str, Any]) -> dict[str, Any]: ...
    async def get_user_display_name(self, user_id: str) -> str: ...
    async def aclose(self) -> Any: ...


class WrikeClientProtocol(Protocol):
    async def test_connection(self) -> dict[str, Any]: ...
    async def create_task_in_folder(self, folder_id: str, payload: dict[str, Any]) -> WrikeTask: ...
    async def set_task_dates(self, task_id: str, start_date: str | None, due_date: str | None) -> dict[str, Any]: ...
    async def update_task(self, task_id: str, updates: dict[str, Any]) -> dict[str, Any]: ...
    async def find_task_by_permalink(self, permalink: str) -> Optional[WrikeTask]: ...
    async def list_recent_tasks(self, *, limit: int = 100) -> list[WrikeTask]: ...
    async def aclose(self) -> Any: ...


class TaskStoreProtocol(Protocol):
    async def get_task(self, task_id: str) -> Optional[Task]: ...
    async def find_by_wrike_id(self, wrike_id: str) -> Optional[Task]: ...
    async def list_tasks(
        self,
        channel_id: str,
        *,
        assignee_user_id: str | None = None,
        limit: int = 20,
    ) -> list[Task]: ...
    async def save_task(self, task: Task) -> Task: ...
    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]: ...


class ErrorSinkProtocol(Protocol):
    def log_best_effort_failure(
        self,
        *,
        operation: str,
        error: BaseException,
        task_id: str | None = None,
        severity: str = "warning",
    ) -> None: ...


@dataclass(frozen=True)
class WorkflowConfig:
    default_folder_id: str
    channel_folder_map: Mapping[str, str] = field(default_factory=dict)
    fallback_channel_id: Optional[str] = None
    permalink_base: str = "https://www.wrike.com/open.htm"
    assignee_field_id: Optional[str] = None
    description_field_id: Optional[str] = None
    custom_status_ids: Mapping[str, str] = field(default_factory=dict)
    lookup_scan_limit: int = 100
    notify_on_date_failure: bool = False


@dataclass(frozen=True)
class InteractionRouterDeps:
    orchestrator: Any
    slack: SlackClientProtocol
    runner: Any
    logger: Logger

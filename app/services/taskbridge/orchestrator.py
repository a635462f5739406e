"""Task creation and status synchronization across Wrike, Slack and the task mirror.

Wrike is the source of truth. Its writes are the only fatal steps; every Slack
post, message edit and mirror write is best-effort and logged on failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Optional, TypeVar

from ..slack import SlackError
from ..wrike import WrikeAuthError, WrikeError, WrikeTask, WrikeTimeoutError, build_permalink
from .errors import (
    InvalidInteractionError,
    TaskBridgeError,
    TaskResolutionError,
    connectivity_error_from,
    write_error_from,
)
from .models import UNKNOWN_STATUS, CreatedTask, MessageRef, StatusUpdateResult, Task, TaskDetails
from .notifications import (
    build_assignee_notification,
    build_channel_notification,
    build_date_failure_notice,
    build_requester_confirmation,
    build_status_change_notification,
    build_task_update,
)
from .reliability import emit_orphan_event
from .runtime_deps import (
    ErrorSinkProtocol,
    SlackClientProtocol,
    TaskStoreProtocol,
    WorkflowConfig,
    WrikeClientProtocol,
)
from .status_mapping import build_wrike_status_update, domain_status_from_wrike

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _nothing() -> None:
    return None


class TaskWorkflowOrchestrator:
    def __init__(
        self,
        *,
        slack: SlackClientProtocol,
        wrike: WrikeClientProtocol,
        store: TaskStoreProtocol,
        runner: Any,
        config: WorkflowConfig,
        error_sink: ErrorSinkProtocol | None = None,
        orphan_db: Any | None = None,
    ) -> None:
        self.slack = slack
        self.wrike = wrike
        self.store = store
        self.runner = runner
        self.config = config
        self.error_sink = error_sink
        self.orphan_db = orphan_db

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resolve_folder(self, channel_id: str | None) -> str:
        folder_id = self.config.channel_folder_map.get((channel_id or "").strip())
        if folder_id:
            return folder_id
        if not self.config.default_folder_id:
            raise TaskBridgeError(
                "No Wrike folder configured",
                user_message="No Wrike folder is configured for this channel. Ask an admin to set WRIKE_DEFAULT_FOLDER_ID.",
            )
        return self.config.default_folder_id

    def build_wrike_payload(self, details: TaskDetails, assignee_name: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": details.title,
            "description": details.description,
        }
        custom_fields: list[dict[str, str]] = []
        if assignee_name and self.config.assignee_field_id:
            custom_fields.append({"id": self.config.assignee_field_id, "value": assignee_name})
        if details.description and self.config.description_field_id:
            custom_fields.append({"id": self.config.description_field_id, "value": details.description})
        if custom_fields:
            payload["customFields"] = custom_fields
        return payload

    async def _record_failure(self, operation: str, exc: BaseException, task_id: str | None) -> None:
        logger.warning("%s failed for task %s: %s", operation, task_id or "-", exc)
        await self._report_failure(operation, exc, task_id)

    async def _report_failure(self, operation: str, exc: BaseException, task_id: str | None) -> None:
        if self.error_sink is None:
            return
        try:
            await asyncio.to_thread(
                self.error_sink.log_best_effort_failure,
                operation=operation,
                error=exc,
                task_id=task_id,
            )
        except Exception:  # noqa: BLE001
            pass  # Never break the workflow on the error sink

    async def _best_effort(self, operation: str, aw: Awaitable[T], *, task_id: str | None) -> Optional[T]:
        try:
            return await aw
        except Exception as exc:  # noqa: BLE001
            await self._record_failure(operation, exc, task_id)
            return None

    async def _post(self, channel: str, content: tuple[str, list[dict[str, Any]]]) -> Optional[MessageRef]:
        text, blocks = content
        response = await self.slack.post_message(channel=channel, text=text, blocks=blocks)
        if not response.ts:
            return None
        return MessageRef(channel=response.channel or channel, timestamp=response.ts)

    async def _resolve_assignee_name(self, user_id: str | None) -> Optional[str]:
        if not user_id:
            return None
        try:
            return await self.slack.get_user_display_name(user_id)
        except SlackError as exc:
            logger.info("Could not resolve display name for %s, using raw id: %s", user_id, exc)
            return user_id

    # ------------------------------------------------------------------
    # Task creation
    # ------------------------------------------------------------------

    async def create_task(
        self,
        details: TaskDetails,
        requesting_user_id: str | None,
        channel_id: str | None,
    ) -> CreatedTask:
        """Create the Wrike task, then notify and mirror it in the background.

        Returns once the Wrike write (and the optional date write) resolved.
        """
        channel_id = (channel_id or "").strip() or None
        folder_id = self.resolve_folder(channel_id)

        try:
            await self.wrike.test_connection()
        except WrikeError as exc:
            logger.warning("Wrike connection test failed: %s", exc)
            raise connectivity_error_from(exc) from exc

        assignee_name = await self._resolve_assignee_name(details.assignee_user_id)
        payload = self.build_wrike_payload(details, assignee_name)

        try:
            wrike_task = await self.wrike.create_task_in_folder(folder_id, payload)
        except WrikeError as exc:
            logger.warning("Wrike task creation failed in folder %s: %s", folder_id, exc)
            raise write_error_from(exc, action="create task") from exc

        display_id = wrike_task.display_id
        if not display_id:
            logger.warning("Wrike permalink %r carries no display id, using %s", wrike_task.permalink, wrike_task.id)
            display_id = wrike_task.id
        task_url = wrike_task.permalink or build_permalink(display_id, self.config.permalink_base)
        logger.info("Created Wrike task %s (%s) in folder %s", display_id, wrike_task.id, folder_id)

        task = Task(
            task_id=display_id,
            wrike_id=wrike_task.id,
            title=details.title,
            description=details.description,
            status="New",
            start_date=details.start_date,
            due_date=details.due_date,
            assignee_user_id=details.assignee_user_id,
            assignee_display_name=assignee_name,
            requested_by=requesting_user_id or None,
            channel_id=channel_id,
            folder_id=folder_id,
            wrike_permalink=task_url,
        )

        # The task already exists in Wrike from here on; nothing below may fail the request.
        date_error: Optional[Exception] = None
        if details.start_date and details.due_date:
            try:
                await self.wrike.set_task_dates(wrike_task.id, details.start_date, details.due_date)
            except Exception as exc:  # noqa: BLE001
                date_error = exc
                logger.warning("set_task_dates failed for task %s: %s", display_id, exc)

        self.runner.spawn(
            self._publish_and_persist(task, wrike_task, date_error=date_error),
            label=f"task-create:{display_id}",
        )
        return CreatedTask(task_id=display_id, task_url=task_url, wrike_id=wrike_task.id)

    async def _publish_and_persist(
        self,
        task: Task,
        wrike_task: WrikeTask,
        *,
        date_error: Optional[Exception] = None,
    ) -> Task:
        if date_error is not None:
            await self._report_failure("set_task_dates", date_error, task.task_id)
        notify_date_failure = date_error is not None and self.config.notify_on_date_failure
        channel = task.channel_id or self.config.fallback_channel_id

        channel_post = (
            self._best_effort("notify_channel", self._post(channel, build_channel_notification(task)), task_id=task.task_id)
            if channel
            else _nothing()
        )
        requester_post = (
            self._best_effort(
                "notify_requester",
                self._post(task.requested_by, build_requester_confirmation(task)),
                task_id=task.task_id,
            )
            if task.requested_by
            else _nothing()
        )
        assignee_post = (
            self._best_effort(
                "notify_assignee",
                self._post(task.assignee_user_id, build_assignee_notification(task)),
                task_id=task.task_id,
            )
            if task.assignee_user_id
            else _nothing()
        )
        channel_ref, user_ref, assignee_ref = await asyncio.gather(channel_post, requester_post, assignee_post)

        if notify_date_failure and task.requested_by:
            await self._best_effort(
                "notify_date_failure",
                self.slack.post_message(channel=task.requested_by, text=build_date_failure_notice(task)),
                task_id=task.task_id,
            )

        task = replace(task, channel_message=channel_ref, user_message=user_ref, assignee_message=assignee_ref)
        try:
            saved = await self.store.save_task(task)
        except Exception as exc:  # noqa: BLE001
            await self._record_failure("persist_task", exc, task.task_id)
            await self._emit_orphan(task, wrike_task, str(exc))
            return task

        if getattr(self.store, "backend_name", None) == "memory":
            await self._emit_orphan(task, wrike_task, "durable task store unavailable, mirrored in memory only")
        return saved

    async def _emit_orphan(self, task: Task, wrike_task: WrikeTask, error: str) -> None:
        if self.orphan_db is None:
            return
        await asyncio.to_thread(
            emit_orphan_event,
            self.orphan_db,
            wrike_task=wrike_task,
            task_id=task.task_id,
            channel_id=task.channel_id,
            requested_by=task.requested_by,
            error=error,
        )

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    async def resolve_wrike_id(self, display_id: str) -> str:
        """Map a display id to Wrike's internal id: permalink lookup, then recent-task scan."""
        permalink = build_permalink(display_id, self.config.permalink_base)
        try:
            match = await self.wrike.find_task_by_permalink(permalink)
        except (WrikeAuthError, WrikeTimeoutError) as exc:
            raise connectivity_error_from(exc) from exc
        except WrikeError as exc:
            logger.info("Permalink lookup failed for %s: %s", display_id, exc)
            match = None
        if match and match.id:
            return match.id

        try:
            recent = await self.wrike.list_recent_tasks(limit=self.config.lookup_scan_limit)
        except (WrikeAuthError, WrikeTimeoutError) as exc:
            raise connectivity_error_from(exc) from exc
        except WrikeError as exc:
            raise TaskResolutionError(
                f"Task lookup failed for {display_id}: {exc}",
                user_message=f"Task {display_id} could not be looked up in Wrike: {exc.detail or exc}",
            ) from exc

        for candidate in recent:
            if candidate.display_id == display_id:
                return candidate.id

        raise TaskResolutionError(
            f"Task {display_id} not found in Wrike",
            user_message=f"Task {display_id} could not be found in Wrike.",
        )

    async def update_task_status(self, task_id: str, new_status: str) -> StatusUpdateResult:
        task_id = (task_id or "").strip()
        new_status = (new_status or "").strip()
        if not task_id or not new_status:
            raise InvalidInteractionError(
                "Status update requires a task id and a status",
                user_message="Invalid status update: both a task id and a status are required.",
            )

        record = await self._best_effort("load_task", self.store.get_task(task_id), task_id=task_id)
        previous_status = record.status if record else UNKNOWN_STATUS

        if record and record.wrike_id:
            wrike_id = record.wrike_id
        else:
            wrike_id = await self.resolve_wrike_id(task_id)

        updates = build_wrike_status_update(new_status, self.config.custom_status_ids)
        try:
            upstream = await self.wrike.update_task(wrike_id, updates)
        except WrikeError as exc:
            logger.warning("Wrike status update failed for %s: %s", task_id, exc)
            raise write_error_from(exc, action="update task status") from exc
        logger.info("Task %s status %s -> %s", task_id, previous_status, new_status)

        if record is not None:
            updated = await self._best_effort(
                "mirror_status",
                self.store.update_task(task_id, status=new_status, previous_status=previous_status),
                task_id=task_id,
            )
            current = updated or replace(record, status=new_status, previous_status=previous_status)
            await self._refresh_messages(current, new_status)

        await self._announce_transition(task_id, record, previous_status, new_status)
        return StatusUpdateResult(
            task_id=task_id,
            previous_status=previous_status,
            new_status=new_status,
            upstream=upstream if isinstance(upstream, dict) else {},
        )

    async def _refresh_messages(self, task: Task, status: str) -> None:
        edits = []
        for operation, ref, with_control in (
            ("edit_channel_message", task.channel_message, True),
            ("edit_user_message", task.user_message, False),
            ("edit_assignee_message", task.assignee_message, False),
        ):
            if ref is None:
                continue
            text, blocks = build_task_update(task, status, include_status_control=with_control)
            edits.append(
                self._best_effort(
                    operation,
                    self.slack.update_message(channel=ref.channel, ts=ref.timestamp, text=text, blocks=blocks),
                    task_id=task.task_id,
                )
            )
        if edits:
            await asyncio.gather(*edits)

    async def _announce_transition(
        self,
        task_id: str,
        record: Optional[Task],
        previous_status: str,
        new_status: str,
    ) -> None:
        content = build_status_change_notification(
            task_id=task_id,
            title=record.title if record else None,
            task_url=record.wrike_permalink if record else build_permalink(task_id, self.config.permalink_base),
            old_status=previous_status,
            new_status=new_status,
        )
        channel = (record.channel_id if record else None) or self.config.fallback_channel_id
        assignee = record.assignee_user_id if record else None

        posts = []
        if channel:
            posts.append(self._best_effort("announce_channel", self._post(channel, content), task_id=task_id))
        if assignee:
            posts.append(self._best_effort("announce_assignee", self._post(assignee, content), task_id=task_id))
        if posts:
            await asyncio.gather(*posts)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_tasks(
        self,
        channel_id: str | None,
        *,
        assignee_user_id: str | None = None,
        limit: int = 20,
    ) -> list[Task]:
        channel_id = (channel_id or "").strip()
        if not channel_id:
            raise InvalidInteractionError(
                "Task listing requires a channel",
                user_message="Tasks can only be listed from inside a channel.",
            )
        try:
            return await self.store.list_tasks(channel_id, assignee_user_id=assignee_user_id, limit=limit)
        except Exception as exc:  # noqa: BLE001
            logger.warning("list_tasks failed for channel %s: %s", channel_id, exc)
            self.runner.spawn(self._report_failure("list_tasks", exc, None), label=f"list-tasks:{channel_id}")
            raise TaskBridgeError(
                f"Task listing failed: {exc}",
                user_message="Tasks could not be loaded right now. Please try again.",
            ) from exc

    # ------------------------------------------------------------------
    # Wrike webhook mirroring
    # ------------------------------------------------------------------

    async def mirror_upstream_status(
        self,
        wrike_id: str,
        *,
        custom_status_id: str | None = None,
        main_status: str | None = None,
    ) -> Optional[Task]:
        record = await self._best_effort("load_task", self.store.find_by_wrike_id(wrike_id), task_id=wrike_id)
        if record is None:
            logger.info("Ignoring Wrike status change for untracked task %s", wrike_id)
            return None

        new_status = domain_status_from_wrike(
            custom_status_id=custom_status_id,
            main_status=main_status,
            custom_status_ids=self.config.custom_status_ids,
        )
        if not new_status or new_status == record.status:
            return None

        updated = await self._best_effort(
            "mirror_status",
            self.store.update_task(record.task_id, status=new_status, previous_status=record.status),
            task_id=record.task_id,
        )
        current = updated or replace(record, status=new_status, previous_status=record.status)
        await self._refresh_messages(current, new_status)
        return current

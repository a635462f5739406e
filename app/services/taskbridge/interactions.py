"""Slack interaction routing for the task bridge.

Raw Slack payloads are classified once, at the boundary, into typed variants;
handlers only ever see those. ``route_interaction`` always returns a valid
acknowledgment and never raises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from fastapi import Response

from ..slack import SlackError, SlackExpiredTriggerError
from . import responses
from .errors import InvalidInteractionError, TaskBridgeError
from .modals import (
    ASSIGNEE_BLOCK,
    CREATE_TASK_CALLBACK_ID,
    DESCRIPTION_BLOCK,
    DUE_DATE_BLOCK,
    START_DATE_BLOCK,
    TITLE_BLOCK,
    build_task_creation_modal,
)
from .models import TaskDetails
from .notifications import CREATE_ANOTHER_ACTION_ID, STATUS_ACTION_ID
from .runtime_deps import InteractionRouterDeps
from .status_mapping import status_label


@dataclass(frozen=True)
class TaskCreationSubmission:
    user_id: str
    channel_id: Optional[str]
    details: TaskDetails


@dataclass(frozen=True)
class OpenCreationFormAction:
    user_id: str
    channel_id: Optional[str]
    trigger_id: Optional[str]


@dataclass(frozen=True)
class StatusChangeAction:
    user_id: str
    channel_id: Optional[str]
    value: str


@dataclass(frozen=True)
class UnsupportedInteraction:
    kind: str


Interaction = Union[TaskCreationSubmission, OpenCreationFormAction, StatusChangeAction, UnsupportedInteraction]


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _state_value(values: dict[str, Any], block: tuple[str, str], key: str) -> Optional[str]:
    block_id, action_id = block
    element = _dict(_dict(values.get(block_id)).get(action_id))
    return _text(element.get(key))


def _metadata_channel(raw: Any) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError:
        # Older modals stored the bare channel id.
        return _text(raw)
    return _text(_dict(metadata).get("channel_id"))


def parse_status_value(value: Any) -> tuple[str, str]:
    """Split a ``taskId:status`` option value on its first colon."""
    raw = value if isinstance(value, str) else ""
    task_id, sep, status = raw.partition(":")
    task_id, status = task_id.strip(), status.strip()
    if not sep or not task_id or not status:
        raise InvalidInteractionError(
            f"Invalid status value: {raw!r}",
            user_message="Invalid status selection. Please pick a status from the dropdown again.",
        )
    return task_id, status


def parse_interaction(payload: dict[str, Any]) -> Interaction:
    kind = str(payload.get("type") or "")
    user_id = _text(_dict(payload.get("user")).get("id")) or ""

    if kind == "view_submission":
        view = _dict(payload.get("view"))
        if view.get("callback_id") != CREATE_TASK_CALLBACK_ID:
            return UnsupportedInteraction(kind=f"view_submission:{view.get('callback_id')}")
        values = _dict(_dict(view.get("state")).get("values"))
        details = TaskDetails(
            title=_state_value(values, TITLE_BLOCK, "value") or "",
            description=_state_value(values, DESCRIPTION_BLOCK, "value") or "",
            start_date=_state_value(values, START_DATE_BLOCK, "selected_date"),
            due_date=_state_value(values, DUE_DATE_BLOCK, "selected_date"),
            assignee_user_id=_state_value(values, ASSIGNEE_BLOCK, "selected_user"),
        )
        return TaskCreationSubmission(
            user_id=user_id,
            channel_id=_metadata_channel(view.get("private_metadata")),
            details=details,
        )

    if kind == "block_actions":
        actions = payload.get("actions")
        action = _dict(actions[0]) if isinstance(actions, list) and actions else {}
        action_id = str(action.get("action_id") or "")
        channel_id = _text(_dict(payload.get("channel")).get("id"))

        if action_id == CREATE_ANOTHER_ACTION_ID:
            # The confirmation lives in a DM; the button value carries the origin channel.
            origin = _text(action.get("value"))
            if origin == "create_task":
                origin = None
            return OpenCreationFormAction(
                user_id=user_id,
                channel_id=origin or channel_id,
                trigger_id=_text(payload.get("trigger_id")),
            )
        if action_id == STATUS_ACTION_ID:
            selected = _dict(action.get("selected_option"))
            return StatusChangeAction(
                user_id=user_id,
                channel_id=channel_id,
                value=str(selected.get("value") or action.get("value") or ""),
            )
        return UnsupportedInteraction(kind=f"block_actions:{action_id}")

    return UnsupportedInteraction(kind=kind or "unknown")


async def open_creation_form(
    *,
    trigger_id: Optional[str],
    channel_id: Optional[str],
    deps: InteractionRouterDeps,
) -> Response:
    if not trigger_id:
        return responses.expired_trigger()
    try:
        await deps.slack.open_view(trigger_id=trigger_id, view=build_task_creation_modal(channel_id))
    except SlackExpiredTriggerError:
        deps.logger.info("Trigger expired before the task form could open")
        return responses.expired_trigger()
    except SlackError as exc:
        deps.logger.warning("Failed to open task form: %s", exc)
        return responses.ephemeral_error(f"Could not open the task form: {exc}")
    return responses.ack()


async def _apply_status_change(
    task_id: str,
    status: str,
    *,
    user_id: str,
    channel_id: Optional[str],
    deps: InteractionRouterDeps,
) -> None:
    try:
        await deps.orchestrator.update_task_status(task_id, status)
    except TaskBridgeError as exc:
        deps.logger.warning("Status update for %s failed: %s", task_id, exc)
        message = f"❌ {exc.user_message}"
        if channel_id and user_id:
            await deps.slack.post_ephemeral(channel=channel_id, user=user_id, text=message)
        elif user_id:
            await deps.slack.post_message(channel=user_id, text=message)


def schedule_status_update(
    task_id: str,
    status: str,
    *,
    user_id: str,
    channel_id: Optional[str],
    deps: InteractionRouterDeps,
) -> Response:
    deps.runner.spawn(
        _apply_status_change(task_id, status, user_id=user_id, channel_id=channel_id, deps=deps),
        label=f"status-update:{task_id}",
    )
    return responses.ephemeral_info(f"Updating task {task_id} to {status_label(status)}...")


async def _handle_submission(submission: TaskCreationSubmission, deps: InteractionRouterDeps) -> Response:
    try:
        created = await deps.orchestrator.create_task(
            submission.details,
            submission.user_id,
            submission.channel_id,
        )
    except TaskBridgeError as exc:
        deps.logger.warning("Task creation failed: %s", exc)
        return responses.modal_errors(exc.user_message)
    except Exception as exc:  # noqa: BLE001
        deps.logger.exception("Unexpected task creation failure: %s", exc)
        return responses.modal_errors("Something went wrong while creating the task. Please try again.")
    deps.logger.info("Task %s created by %s", created.task_id, submission.user_id or "-")
    return responses.clear_modal()


async def route_interaction(payload: dict[str, Any], *, deps: InteractionRouterDeps) -> Response:
    try:
        interaction = parse_interaction(payload)

        if isinstance(interaction, TaskCreationSubmission):
            return await _handle_submission(interaction, deps)

        if isinstance(interaction, OpenCreationFormAction):
            return await open_creation_form(
                trigger_id=interaction.trigger_id,
                channel_id=interaction.channel_id,
                deps=deps,
            )

        if isinstance(interaction, StatusChangeAction):
            try:
                task_id, status = parse_status_value(interaction.value)
            except InvalidInteractionError as exc:
                return responses.ephemeral_error(exc.user_message)
            return schedule_status_update(
                task_id,
                status,
                user_id=interaction.user_id,
                channel_id=interaction.channel_id,
                deps=deps,
            )

        deps.logger.debug("Unsupported interaction: %s", interaction.kind)
        return responses.not_supported()
    except Exception as exc:  # noqa: BLE001
        deps.logger.exception("Interaction handling failed: %s", exc)
        return responses.ephemeral_error("Something went wrong handling that action.")

"""Slack Block Kit builders for task notifications.

Pure functions of task data. Status labels always come from
``status_mapping.STATUS_LABELS`` so creation, edit and transition messages
agree.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from .models import Task
from .status_mapping import TASK_STATUSES, status_label

STATUS_ACTION_ID = "update_task_status"
CREATE_ANOTHER_ACTION_ID = "create_another_task"

_NONE = "None"
# Slack rejects the whole message when a section field exceeds this.
_FIELD_LIMIT = 2000


def format_date(value: str | None) -> str:
    """Render an ISO date as e.g. ``Friday, January 10, 2025``."""
    if not value:
        return _NONE
    try:
        parsed = date.fromisoformat(str(value)[:10])
    except ValueError:
        return str(value)
    return f"{parsed:%A}, {parsed:%B} {parsed.day}, {parsed.year}"


def status_option_value(task_id: str, status: str) -> str:
    return f"{task_id}:{status}"


def _status_option(task_id: str, status: str) -> dict[str, Any]:
    return {
        "text": {"type": "plain_text", "text": status_label(status)},
        "value": status_option_value(task_id, status),
    }


def _assignee_text(task: Task) -> str:
    if task.assignee_user_id:
        return f"<@{task.assignee_user_id}>"
    if task.assignee_display_name:
        return task.assignee_display_name
    return _NONE


def _field(label: str, value: str) -> dict[str, str]:
    text = f"*{label}:*\n{value}"
    if len(text) > _FIELD_LIMIT:
        text = text[: _FIELD_LIMIT - 1] + "…"
    return {"type": "mrkdwn", "text": text}


def _link_button(task: Task, text: str = "🔗 Open in Wrike") -> dict[str, Any] | None:
    if not task.wrike_permalink:
        return None
    return {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "url": task.wrike_permalink,
        "style": "primary",
    }


def build_status_select(task_id: str, current_status: str | None = None) -> dict[str, Any]:
    select: dict[str, Any] = {
        "type": "static_select",
        "placeholder": {"type": "plain_text", "text": "Update status"},
        "action_id": STATUS_ACTION_ID,
        "options": [_status_option(task_id, status) for status in TASK_STATUSES],
    }
    if current_status in TASK_STATUSES:
        select["initial_option"] = _status_option(task_id, current_status)
    return select


def build_task_blocks(
    task: Task,
    *,
    status: str | None = None,
    include_status_control: bool = False,
    heading: str = "🎯 New task",
) -> list[dict[str, Any]]:
    """Task summary card; channel-facing cards carry the status dropdown."""
    fields = [
        _field("Title", task.title),
        _field("Description", task.description or _NONE),
        _field("Assignee", _assignee_text(task)),
        _field("Channel", f"<#{task.channel_id}>" if task.channel_id else _NONE),
        _field("Start date", format_date(task.start_date)),
        _field("Due date", format_date(task.due_date)),
    ]
    if status:
        fields.append(_field("Status", status_label(status)))

    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{heading}: {task.task_id}"}},
        # Slack caps section fields at 10.
        {"type": "section", "fields": fields[:10]},
    ]

    elements: list[dict[str, Any]] = []
    link = _link_button(task)
    if link:
        elements.append(link)
    if include_status_control:
        elements.append(build_status_select(task.task_id, status))
    if elements:
        blocks.append({"type": "actions", "elements": elements})
    return blocks


def build_channel_notification(task: Task) -> tuple[str, list[dict[str, Any]]]:
    text = f"New task created: {task.task_id} - {task.title}"
    return text, build_task_blocks(task, status=task.status, include_status_control=True)


def build_requester_confirmation(task: Task) -> tuple[str, list[dict[str, Any]]]:
    text = f'Task "{task.title}" created successfully!'
    blocks = build_task_blocks(task, status=task.status, heading="✅ Task created")
    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "📋 Create another task"},
                    "action_id": CREATE_ANOTHER_ACTION_ID,
                    "value": task.channel_id or "create_task",
                }
            ],
        }
    )
    return text, blocks


def build_assignee_notification(task: Task) -> tuple[str, list[dict[str, Any]]]:
    text = f"New task assigned to you: {task.title}"
    blocks = build_task_blocks(task, status=task.status, heading="🎯 Task assigned to you")
    blocks.insert(
        1,
        {"type": "section", "text": {"type": "mrkdwn", "text": "Hello! A new task has been assigned to you."}},
    )
    return text, blocks


def build_task_update(task: Task, status: str, *, include_status_control: bool) -> tuple[str, list[dict[str, Any]]]:
    """Replacement content for a previously posted task message."""
    text = f"Task {task.task_id} (status: {status_label(status)})"
    return text, build_task_blocks(task, status=status, include_status_control=include_status_control)


def build_status_change_notification(
    *,
    task_id: str,
    title: str | None,
    task_url: str | None,
    old_status: str,
    new_status: str,
) -> tuple[str, list[dict[str, Any]]]:
    name = f" *{title}*" if title else ""
    message = (
        f"🔄 Task {task_id}{name} status changed: "
        f"{status_label(old_status)} → {status_label(new_status)}"
    )
    blocks: list[dict[str, Any]] = [{"type": "section", "text": {"type": "mrkdwn", "text": message}}]
    if task_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "🔗 Open in Wrike"},
                        "url": task_url,
                        "style": "primary",
                    }
                ],
            }
        )
    return f"Task {task_id} status updated to {status_label(new_status)}", blocks


def build_date_failure_notice(task: Task) -> str:
    return (
        f"⚠️ Task {task.task_id} ({task.title}) was created, but its start/due dates "
        "could not be saved in Wrike. Please set them directly in Wrike."
    )


def build_task_list(tasks: list[Task], *, mine: bool = False) -> tuple[str, list[dict[str, Any]]]:
    """Compact listing for the slash command; one section per task."""
    heading = "🔍 Here are your tasks:" if mine else "📋 Tasks in this channel:"
    blocks: list[dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": heading}},
        {"type": "divider"},
    ]
    for task in tasks:
        name = f"<{task.wrike_permalink}|{task.task_id}>" if task.wrike_permalink else task.task_id
        line = f"*{name}* {task.title}\nStatus: {status_label(task.status)} | Assignee: {_assignee_text(task)}"
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": line[:_FIELD_LIMIT]}})
    return heading, blocks

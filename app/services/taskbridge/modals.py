"""Task creation modal layout."""

from __future__ import annotations

import json
from typing import Any

CREATE_TASK_CALLBACK_ID = "create_task_modal"

TITLE_BLOCK = ("task_title", "title_input")
DESCRIPTION_BLOCK = ("task_description", "description_input")
START_DATE_BLOCK = ("task_start_date", "start_date_input")
DUE_DATE_BLOCK = ("task_due_date", "due_date_input")
ASSIGNEE_BLOCK = ("task_assignee", "assignee_input")


def _input(block: tuple[str, str], label: str, element: dict[str, Any], *, optional: bool) -> dict[str, Any]:
    block_id, action_id = block
    return {
        "type": "input",
        "block_id": block_id,
        "optional": optional,
        "label": {"type": "plain_text", "text": label},
        "element": {**element, "action_id": action_id},
    }


def build_task_creation_modal(channel_id: str | None = None) -> dict[str, Any]:
    return {
        "type": "modal",
        "callback_id": CREATE_TASK_CALLBACK_ID,
        "private_metadata": json.dumps({"channel_id": channel_id or ""}),
        "title": {"type": "plain_text", "text": "Create a task"},
        "submit": {"type": "plain_text", "text": "Create"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            _input(TITLE_BLOCK, "Title", {"type": "plain_text_input"}, optional=False),
            _input(
                DESCRIPTION_BLOCK,
                "Description",
                {"type": "plain_text_input", "multiline": True},
                optional=True,
            ),
            _input(START_DATE_BLOCK, "Start date", {"type": "datepicker"}, optional=True),
            _input(DUE_DATE_BLOCK, "Due date", {"type": "datepicker"}, optional=True),
            _input(ASSIGNEE_BLOCK, "Assignee", {"type": "users_select"}, optional=True),
        ],
    }

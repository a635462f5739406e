"""Task records and workflow value types."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

DEFAULT_TASK_TITLE = "Untitled Task"
UNKNOWN_STATUS = "Unknown"


@dataclass(frozen=True)
class MessageRef:
    """A previously posted Slack message, kept so it can be edited in place."""

    channel: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"channel": self.channel, "timestamp": self.timestamp}

    @classmethod
    def from_value(cls, value: Any) -> Optional["MessageRef"]:
        if not isinstance(value, dict):
            return None
        channel = str(value.get("channel") or "").strip()
        timestamp = str(value.get("timestamp") or value.get("ts") or "").strip()
        if not channel or not timestamp:
            return None
        return cls(channel=channel, timestamp=timestamp)


@dataclass(frozen=True)
class TaskDetails:
    title: str = DEFAULT_TASK_TITLE
    description: str = ""
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    assignee_user_id: Optional[str] = None

    def __post_init__(self) -> None:
        title = (self.title or "").strip()
        object.__setattr__(self, "title", title or DEFAULT_TASK_TITLE)
        object.__setattr__(self, "description", (self.description or "").strip())


@dataclass(frozen=True)
class Task:
    task_id: str
    wrike_id: str
    title: str
    description: str = ""
    status: str = "New"
    previous_status: Optional[str] = None
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    assignee_user_id: Optional[str] = None
    assignee_display_name: Optional[str] = None
    requested_by: Optional[str] = None
    channel_id: Optional[str] = None
    folder_id: Optional[str] = None
    wrike_permalink: Optional[str] = None
    channel_message: Optional[MessageRef] = None
    user_message: Optional[MessageRef] = None
    assignee_message: Optional[MessageRef] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        for key in ("channel_message", "user_message", "assignee_message"):
            ref = getattr(self, key)
            row[key] = ref.to_dict() if ref else None
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Task":
        def _opt(key: str) -> Optional[str]:
            value = row.get(key)
            return str(value) if value not in (None, "") else None

        return cls(
            task_id=str(row.get("task_id") or ""),
            wrike_id=str(row.get("wrike_id") or ""),
            title=str(row.get("title") or DEFAULT_TASK_TITLE),
            description=str(row.get("description") or ""),
            status=str(row.get("status") or "New"),
            previous_status=_opt("previous_status"),
            start_date=_opt("start_date"),
            due_date=_opt("due_date"),
            assignee_user_id=_opt("assignee_user_id"),
            assignee_display_name=_opt("assignee_display_name"),
            requested_by=_opt("requested_by"),
            channel_id=_opt("channel_id"),
            folder_id=_opt("folder_id"),
            wrike_permalink=_opt("wrike_permalink"),
            channel_message=MessageRef.from_value(row.get("channel_message")),
            user_message=MessageRef.from_value(row.get("user_message")),
            assignee_message=MessageRef.from_value(row.get("assignee_message")),
            created_at=_opt("created_at"),
            updated_at=_opt("updated_at"),
        )


@dataclass(frozen=True)
class CreatedTask:
    task_id: str
    task_url: str
    wrike_id: str


@dataclass(frozen=True)
class StatusUpdateResult:
    task_id: str
    previous_status: str
    new_status: str
    upstream: dict[str, Any] = field(default_factory=dict)

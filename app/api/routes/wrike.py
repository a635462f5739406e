import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...services.taskbridge import TaskBridge
from .slack import get_bridge

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wrike", tags=["wrike"])

STATUS_CHANGED_EVENT = "TaskStatusChanged"


class WrikeWebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(alias="eventType")
    task_id: str | None = Field(default=None, alias="taskId")
    status: str | None = None
    old_status: str | None = Field(default=None, alias="oldStatus")
    custom_status_id: str | None = Field(default=None, alias="customStatusId")
    old_custom_status_id: str | None = Field(default=None, alias="oldCustomStatusId")


def _parse_events(body: Any) -> list[WrikeWebhookEvent]:
    raw_events = body if isinstance(body, list) else [body]
    events: list[WrikeWebhookEvent] = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            continue
        try:
            events.append(WrikeWebhookEvent.model_validate(raw))
        except ValidationError as exc:
            _logger.info("Skipping malformed Wrike event: %s", exc)
    return events


@router.post("/webhook")
async def wrike_webhook(request: Request, bridge: TaskBridge = Depends(get_bridge)):
    try:
        body = await request.json()
    except ValueError:
        _logger.warning("Wrike webhook body is not JSON")
        return JSONResponse({"ok": True})

    for event in _parse_events(body):
        if event.event_type != STATUS_CHANGED_EVENT or not event.task_id:
            continue
        bridge.runner.spawn(
            bridge.orchestrator.mirror_upstream_status(
                event.task_id,
                custom_status_id=event.custom_status_id,
                main_status=event.status,
            ),
            label=f"wrike-status:{event.task_id}",
        )

    return JSONResponse({"ok": True})

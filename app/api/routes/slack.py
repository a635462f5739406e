import json
import logging
from typing import Any
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ...config import Settings, get_settings
from ...services.slack import SlackConfigurationError, get_slack_signing_secret, verify_slack_signature
from ...services.taskbridge import TaskBridge, build_task_bridge, route_interaction
from ...services.taskbridge import responses
from ...services.taskbridge.errors import TaskBridgeError
from ...services.taskbridge.interactions import open_creation_form, schedule_status_update
from ...services.taskbridge.notifications import build_task_list
from ...services.wrike import WrikeConfigurationError

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])

_STATUS_SUBCOMMANDS = {"status", "update"}


def get_bridge(request: Request) -> TaskBridge:
    """Build the task bridge once per application and cache it on ``app.state``."""
    bridge = getattr(request.app.state, "task_bridge", None)
    if bridge is None:
        try:
            bridge = build_task_bridge(get_settings())
        except (SlackConfigurationError, WrikeConfigurationError) as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        request.app.state.task_bridge = bridge
    return bridge


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        value = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return value


def _parse_form(body: bytes) -> dict[str, str]:
    try:
        form = parse_qs(body.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError:
        return {}
    return {key: (values[0] if values else "") for key, values in form.items()}


def _parse_interaction_payload(body: bytes) -> dict[str, Any]:
    payload_str = _parse_form(body).get("payload") or ""
    if not payload_str:
        return {}
    try:
        payload = json.loads(payload_str)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


async def _read_verified_body(request: Request, settings: Settings) -> bytes:
    body = await request.body()
    if not settings.slack_verify_signatures:
        return body

    signing_secret = get_slack_signing_secret(settings).strip()
    if not signing_secret:
        raise HTTPException(status_code=500, detail="SLACK_SIGNING_SECRET not set")

    timestamp = request.headers.get("X-Slack-Request-Timestamp", "")
    signature = request.headers.get("X-Slack-Signature", "")
    if not verify_slack_signature(signing_secret, timestamp, body, signature):
        raise HTTPException(status_code=401, detail="Invalid Slack signature")
    return body


@router.post("/events")
async def slack_events(request: Request, settings: Settings = Depends(get_settings)):
    body = await _read_verified_body(request, settings)

    # If Slack retries a delivery, avoid duplicating side effects.
    if request.headers.get("X-Slack-Retry-Num"):
        return JSONResponse({"ok": True})

    payload = _parse_json(body)

    if payload.get("type") == "url_verification":
        challenge = payload.get("challenge")
        if not isinstance(challenge, str) or not challenge:
            raise HTTPException(status_code=400, detail="Missing Slack challenge")
        return responses.challenge(challenge)

    event = payload.get("event") if isinstance(payload.get("event"), dict) else {}
    _logger.debug("Ignoring Slack event %s", event.get("type") or payload.get("type"))
    return JSONResponse({"ok": True})


async def _list_tasks(bridge: TaskBridge, *, channel_id: str | None, user_id: str, mine: bool) -> JSONResponse:
    try:
        tasks = await bridge.orchestrator.list_tasks(channel_id, assignee_user_id=user_id if mine else None)
    except TaskBridgeError as exc:
        return responses.ephemeral_error(exc.user_message)
    if not tasks:
        return responses.ephemeral("No tasks found.")
    text, blocks = build_task_list(tasks, mine=mine)
    return responses.ephemeral(text, blocks)


@router.post("/commands")
async def slack_commands(
    request: Request,
    settings: Settings = Depends(get_settings),
    bridge: TaskBridge = Depends(get_bridge),
):
    body = await _read_verified_body(request, settings)
    form = _parse_form(body)

    command = (form.get("command") or "").strip()
    user_id = (form.get("user_id") or "").strip()
    channel_id = (form.get("channel_id") or "").strip() or None
    trigger_id = (form.get("trigger_id") or "").strip() or None
    words = (form.get("text") or "").split()

    if command != settings.slack_task_command:
        return responses.ephemeral_error(f"Unknown command: {command or '(none)'}")

    try:
        if words and words[0].lower() in _STATUS_SUBCOMMANDS:
            if len(words) < 3:
                return responses.ephemeral_warning(f"Usage: {command} status <taskId> <status>")
            return schedule_status_update(
                words[1],
                " ".join(words[2:]),
                user_id=user_id,
                channel_id=channel_id,
                deps=bridge.router_deps,
            )

        if words and words[0].lower() == "list":
            return await _list_tasks(bridge, channel_id=channel_id, user_id=user_id, mine="me" in words[1:])

        return await open_creation_form(trigger_id=trigger_id, channel_id=channel_id, deps=bridge.router_deps)
    except Exception as exc:  # noqa: BLE001
        _logger.exception("Slash command %s failed: %s", command, exc)
        return responses.ephemeral_error("Something went wrong handling that command.")


@router.post("/interactions")
async def slack_interactions(
    request: Request,
    settings: Settings = Depends(get_settings),
    bridge: TaskBridge = Depends(get_bridge),
):
    body = await _read_verified_body(request, settings)

    interaction = _parse_interaction_payload(body)
    if not interaction:
        return responses.ack()

    return await route_interaction(interaction, deps=bridge.router_deps)

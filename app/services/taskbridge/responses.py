"""Slack acknowledgment bodies.

Every interaction answers within Slack's deadline with one of these; none of
them performs I/O.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse, PlainTextResponse

from .modals import TITLE_BLOCK


def ack() -> JSONResponse:
    return JSONResponse({"ok": True})


def clear_modal() -> JSONResponse:
    return JSONResponse({"response_action": "clear"})


def modal_errors(message: str, *, block_id: str = TITLE_BLOCK[0]) -> JSONResponse:
    return JSONResponse({"response_action": "errors", "errors": {block_id: message}})


def ephemeral(text: str, blocks: list[dict[str, Any]] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"response_type": "ephemeral", "replace_original": False, "text": text}
    if blocks:
        body["blocks"] = blocks
    return JSONResponse(body)


def ephemeral_error(message: str) -> JSONResponse:
    return ephemeral(f"❌ {message}")


def ephemeral_warning(message: str) -> JSONResponse:
    return ephemeral(f"⚠️ {message}")


def ephemeral_info(message: str) -> JSONResponse:
    return ephemeral(f"⏳ {message}")


def expired_trigger() -> JSONResponse:
    return ephemeral_warning(
        "This button has expired. Run the task command again to open a fresh form."
    )


def not_supported() -> JSONResponse:
    return ephemeral("This action is not supported.")


def challenge(value: str) -> PlainTextResponse:
    return PlainTextResponse(value)

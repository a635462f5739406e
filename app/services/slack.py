import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import Settings, settings


class SlackError(Exception):
    pass


class SlackConfigurationError(SlackError):
    pass


class SlackAuthError(SlackError):
    pass


class SlackTimeoutError(SlackError):
    pass


class SlackAPIError(SlackError):
    def __init__(self, message: str, *, error: str | None = None) -> None:
        super().__init__(message)
        self.error = error


class SlackExpiredTriggerError(SlackAPIError):
    """views.open rejected the trigger_id because it is older than Slack allows."""


def verify_slack_signature(
    signing_secret: str,
    timestamp: str,
    body: bytes,
    signature: str,
) -> bool:
    """
    Verify request came from Slack.

    Slack signs requests using:
      basestring = "v0:{timestamp}:{raw_body}"
      signature = "v0=" + HMAC_SHA256(signing_secret, basestring).hexdigest()
    """
    signing_secret = (signing_secret or "").strip()
    if not signing_secret:
        return False

    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    # Reject requests older than 5 minutes (replay protection)
    if abs(time.time() - ts) > 60 * 5:
        return False

    if not signature or not signature.startswith("v0="):
        return False

    try:
        body_str = body.decode("utf-8")
    except UnicodeDecodeError:
        return False

    sig_basestring = f"v0:{timestamp}:{body_str}"
    digest = hmac.new(
        signing_secret.encode("utf-8"),
        sig_basestring.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    expected = f"v0={digest}"
    return hmac.compare_digest(expected, signature)


@dataclass(frozen=True)
class SlackMessageResponse:
    ok: bool
    ts: Optional[str] = None
    channel: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


class SlackService:
    def __init__(
        self,
        bot_token: str,
        *,
        timeout_s: float = 2.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = (bot_token or "").strip()
        if not self.bot_token:
            raise SlackConfigurationError("SLACK_BOT_TOKEN not set")

        self._client = httpx.AsyncClient(
            base_url="https://slack.com/api",
            headers={"Authorization": f"Bearer {self.bot_token}"},
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            if json_body is not None:
                response = await self._client.post(f"/{method}", json=json_body)
            else:
                response = await self._client.get(f"/{method}", params=params)
        except httpx.TimeoutException as exc:
            raise SlackTimeoutError(f"Slack {method} timed out") from exc
        except httpx.HTTPError as exc:
            raise SlackAPIError(f"Slack {method} request failed: {exc}") from exc

        if response.status_code == 401:
            raise SlackAuthError("Slack auth failed (401). Check SLACK_BOT_TOKEN.")

        if response.status_code < 200 or response.status_code >= 300:
            raise SlackAPIError(f"Slack API error ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise SlackAPIError(f"Slack API returned invalid JSON: {exc}") from exc

        if not data.get("ok"):
            error = str(data.get("error") or "unknown_error")
            if error == "expired_trigger_id":
                raise SlackExpiredTriggerError("Slack trigger_id expired", error=error)
            if error in {"invalid_auth", "not_authed", "token_revoked", "account_inactive"}:
                raise SlackAuthError(f"Slack API error: {error}")
            raise SlackAPIError(f"Slack API error: {error}", error=error)

        return data

    @staticmethod
    def _message_response(data: dict[str, Any]) -> SlackMessageResponse:
        return SlackMessageResponse(
            ok=True,
            ts=str(data.get("ts")) if data.get("ts") else None,
            channel=str(data.get("channel")) if data.get("channel") else None,
            raw=data,
        )

    async def post_message(
        self,
        *,
        channel: str,
        text: str,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> SlackMessageResponse:
        channel = (channel or "").strip()
        if not channel:
            raise SlackAPIError("Slack post_message missing channel")

        payload: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            payload["blocks"] = blocks

        data = await self._call("chat.postMessage", json_body=payload)
        return self._message_response(data)

    async def post_ephemeral(self, *, channel: str, user: str, text: str) -> None:
        channel = (channel or "").strip()
        user = (user or "").strip()
        if not channel or not user:
            raise SlackAPIError("Slack post_ephemeral missing channel/user")

        await self._call("chat.postEphemeral", json_body={"channel": channel, "user": user, "text": text})

    async def update_message(
        self,
        *,
        channel: str,
        ts: str,
        text: str,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> SlackMessageResponse:
        channel = (channel or "").strip()
        ts = (ts or "").strip()
        if not channel or not ts:
            raise SlackAPIError("Slack update_message missing channel/ts")

        payload: dict[str, Any] = {"channel": channel, "ts": ts, "text": text}
        if blocks:
            payload["blocks"] = blocks

        data = await self._call("chat.update", json_body=payload)
        return self._message_response(data)

    async def open_view(self, *, trigger_id: str, view: dict[str, Any]) -> dict[str, Any]:
        trigger_id = (trigger_id or "").strip()
        if not trigger_id:
            raise SlackExpiredTriggerError("Missing trigger_id", error="expired_trigger_id")

        return await self._call("views.open", json_body={"trigger_id": trigger_id, "view": view})

    async def get_user_display_name(self, user_id: str) -> str:
        user_id = (user_id or "").strip()
        if not user_id:
            raise SlackAPIError("Slack users.info missing user")

        data = await self._call("users.info", params={"user": user_id})
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        profile = user.get("profile") if isinstance(user.get("profile"), dict) else {}
        for candidate in (
            profile.get("display_name"),
            profile.get("real_name"),
            user.get("real_name"),
            user.get("name"),
        ):
            name = str(candidate or "").strip()
            if name:
                return name
        return user_id


def get_slack_signing_secret(config: Settings | None = None) -> str:
    return (config or settings).slack_signing_secret


def get_slack_service(config: Settings | None = None) -> SlackService:
    config = config or settings
    return SlackService(bot_token=config.slack_bot_token, timeout_s=config.slack_timeout_s)

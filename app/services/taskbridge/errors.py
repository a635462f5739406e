"""Workflow error taxonomy.

Every error carries a ``user_message`` that the interaction router can show
verbatim in Slack.
"""

from __future__ import annotations

from ..wrike import (
    WrikeAuthError,
    WrikeError,
    WrikeForbiddenError,
    WrikeNotFoundError,
    WrikeRateLimitError,
    WrikeTimeoutError,
)


class TaskBridgeError(Exception):
    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class UpstreamConnectivityError(TaskBridgeError):
    """Wrike could not be reached or rejected our credentials."""


class UpstreamTimeoutError(UpstreamConnectivityError):
    pass


class UpstreamWriteError(TaskBridgeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status_code = status_code
        self.detail = detail


class TaskResolutionError(TaskBridgeError):
    """A display task id could not be resolved to a Wrike task."""


class InvalidInteractionError(TaskBridgeError):
    pass


def connectivity_error_from(exc: WrikeError) -> UpstreamConnectivityError:
    if isinstance(exc, WrikeTimeoutError):
        return UpstreamTimeoutError(
            str(exc),
            user_message="Wrike did not answer in time. Please retry in a moment.",
        )
    if isinstance(exc, WrikeAuthError):
        return UpstreamConnectivityError(
            str(exc),
            user_message=(
                "Wrike integration error: the access token is invalid or expired. "
                "Ask an admin to update WRIKE_ACCESS_TOKEN."
            ),
        )
    return UpstreamConnectivityError(
        str(exc),
        user_message=f"Wrike is unreachable right now ({exc.detail or exc}). Please retry later.",
    )


def write_error_from(exc: WrikeError, *, action: str) -> TaskBridgeError:
    """Translate an adapter failure during a Wrike write into a workflow error."""
    if isinstance(exc, (WrikeTimeoutError, WrikeAuthError)):
        return connectivity_error_from(exc)

    if isinstance(exc, WrikeForbiddenError):
        user_message = f"Failed to {action}: access denied. Check the Wrike folder permissions."
    elif isinstance(exc, WrikeNotFoundError):
        user_message = f"Failed to {action}: the Wrike folder or task does not exist. Check the channel mapping."
    elif isinstance(exc, WrikeRateLimitError):
        user_message = f"Failed to {action}: Wrike is rate limiting requests. Please retry in a minute."
    else:
        status = f"{exc.status_code} - " if exc.status_code else ""
        user_message = f"Failed to {action}: {status}{exc.detail or exc}"

    return UpstreamWriteError(
        str(exc),
        status_code=exc.status_code,
        detail=exc.detail,
        user_message=user_message,
    )

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import Client, create_client

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class AppErrorLogger:
    """Thin wrapper around Supabase inserts for `app_error_events`."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._client: Optional[Client] = None

    def _get_client(self) -> Optional[Client]:
        if not self._settings.error_logging_enabled:
            return None
        if not self._settings.supabase_url or not self._settings.supabase_service_role:
            logger.warning("Error logging enabled but Supabase service role credentials missing.")
            return None
        if not self._client:
            self._client = create_client(self._settings.supabase_url, self._settings.supabase_service_role)
        return self._client

    def log(self, payload: Dict[str, Any]) -> None:
        client = self._get_client()
        if not client:
            return

        allowed = {
            "occurred_at",
            "tool",
            "severity",
            "message",
            "route",
            "method",
            "status_code",
            "request_id",
            "user_id",
            "user_email",
            "meta",
        }

        base_row = {k: v for k, v in payload.items() if k in allowed and v is not None}
        extra = {k: v for k, v in payload.items() if k not in allowed and v is not None}
        if extra:
            meta = base_row.get("meta") if isinstance(base_row.get("meta"), dict) else {}
            base_row["meta"] = {**meta, **extra}
        base_row.setdefault("tool", "wrike-bridge")
        base_row.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

        try:
            client.table("app_error_events").insert(base_row).execute()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to record app error event: %s", exc)

    def log_best_effort_failure(
        self,
        *,
        operation: str,
        error: BaseException,
        task_id: str | None = None,
        severity: str = "warning",
    ) -> None:
        """Record a swallowed failure (notification, message edit, mirror write)."""
        self.log(
            {
                "severity": severity,
                "message": f"{operation} failed: {error}",
                "operation": operation,
                "task_id": task_id,
                "error_type": type(error).__name__,
            }
        )


error_logger = AppErrorLogger()

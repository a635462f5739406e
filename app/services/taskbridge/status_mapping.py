"""Domain status ↔ Wrike status mapping.

Several domain statuses collapse onto Wrike's generic ``Active`` main status,
so the mapping is lossy. Workspaces that define custom statuses can map a
domain status to a custom status id instead; when one exists, only the
custom status is written.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

TASK_STATUSES: tuple[str, ...] = (
    "New",
    "Planned",
    "InProgress",
    "InReview",
    "OnHold",
    "Completed",
    "Cancelled",
)

STATUS_LABELS: dict[str, str] = {
    "New": "🔵 New",
    "Planned": "🟦 Planned",
    "InProgress": "🟡 In progress",
    "InReview": "🟣 In review",
    "OnHold": "🔴 Blocked",
    "Completed": "✅ Completed",
    "Cancelled": "❌ Cancelled",
}

WRIKE_MAIN_STATUS: dict[str, str] = {
    "New": "Active",
    "Planned": "Active",
    "InProgress": "Active",
    "InReview": "Active",
    "OnHold": "Deferred",
    "Completed": "Completed",
    "Cancelled": "Cancelled",
}

# Reverse of WRIKE_MAIN_STATUS for the unambiguous entries only.
_DOMAIN_FROM_MAIN_STATUS: dict[str, str] = {
    "Deferred": "OnHold",
    "Completed": "Completed",
    "Cancelled": "Cancelled",
}


def status_label(status: str | None) -> str:
    if not status:
        return "None"
    return STATUS_LABELS.get(status, status)


def build_wrike_status_update(
    status: str,
    custom_status_ids: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the Wrike update body for a domain status.

    Exactly one of ``customStatus`` / ``status`` is set.
    """
    custom_id = (custom_status_ids or {}).get(status)
    if custom_id:
        return {"customStatus": custom_id}
    return {"status": WRIKE_MAIN_STATUS.get(status, "Active")}


def domain_status_from_wrike(
    *,
    custom_status_id: str | None,
    main_status: str | None,
    custom_status_ids: Mapping[str, str] | None = None,
) -> Optional[str]:
    if custom_status_id:
        for domain_status, wrike_id in (custom_status_ids or {}).items():
            if wrike_id == custom_status_id:
                return domain_status
    if main_status:
        return _DOMAIN_FROM_MAIN_STATUS.get(main_status)
    return None

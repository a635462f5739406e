import asyncio
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from ..config import Settings, settings


class WrikeError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class WrikeAuthError(WrikeError):
    pass


class WrikeForbiddenError(WrikeError):
    pass


class WrikeNotFoundError(WrikeError):
    pass


class WrikeValidationError(WrikeError):
    pass


class WrikeRateLimitError(WrikeError):
    pass


class WrikeTimeoutError(WrikeError):
    pass


class WrikeConnectionError(WrikeError):
    pass


class WrikeAPIError(WrikeError):
    pass


class WrikeConfigurationError(WrikeError):
    pass


@dataclass(frozen=True)
class WrikeTask:
    id: str
    permalink: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    custom_status_id: Optional[str] = None

    @property
    def display_id(self) -> Optional[str]:
        return parse_display_id(self.permalink)


def parse_display_id(permalink: str | None) -> Optional[str]:
    """Return the human-facing task id carried in a permalink's `id` query parameter."""
    if not permalink:
        return None
    try:
        query = urlparse(str(permalink)).query
    except ValueError:
        return None
    values = parse_qs(query).get("id") or []
    display_id = values[0].strip() if values else ""
    return display_id or None


def build_permalink(display_id: str, base: str | None = None) -> str:
    return f"{base or settings.wrike_permalink_base}?{urlencode({'id': display_id})}"


def _coerce_task(row: dict[str, Any]) -> WrikeTask:
    return WrikeTask(
        id=str(row.get("id") or ""),
        permalink=str(row.get("permalink")) if row.get("permalink") else None,
        title=str(row.get("title")) if row.get("title") else None,
        status=str(row.get("status")) if row.get("status") else None,
        custom_status_id=str(row.get("customStatusId")) if row.get("customStatusId") else None,
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return str(data.get("errorDescription") or data.get("error") or response.reason_phrase)
    return response.text


class WrikeService:
    def __init__(
        self,
        access_token: str,
        *,
        api_url: str = "https://www.wrike.com/api/v4",
        timeout_s: float = 2.5,
        max_attempts: int = 2,
        backoff_s: float = 0.25,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = (access_token or "").strip()
        if not self.access_token:
            raise WrikeConfigurationError("WRIKE_ACCESS_TOKEN not set")

        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s

        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        backoff_s = self.backoff_s

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, path, json=json, params=params)
            except httpx.TimeoutException as exc:
                # Timeouts are terminal, never retried.
                raise WrikeTimeoutError(f"Wrike request timed out: {method} {path}") from exc
            except httpx.TransportError as exc:
                # Includes connections the server dropped mid keep-alive.
                if attempt == self.max_attempts:
                    raise WrikeConnectionError(f"Wrike request failed: {exc}") from exc
                await asyncio.sleep(backoff_s)
                backoff_s *= 2
                continue

            status = response.status_code
            if status == 401:
                raise WrikeAuthError(
                    "Wrike access token is invalid or expired",
                    status_code=status,
                    detail=_error_detail(response),
                )
            if status == 403:
                raise WrikeForbiddenError(
                    f"Wrike access denied: {path}",
                    status_code=status,
                    detail=_error_detail(response),
                )
            if status == 404:
                raise WrikeNotFoundError(
                    f"Wrike resource not found: {path}",
                    status_code=status,
                    detail=_error_detail(response),
                )
            if status in (400, 422):
                detail = _error_detail(response)
                raise WrikeValidationError(
                    f"Wrike validation error ({status}): {detail}",
                    status_code=status,
                    detail=detail,
                )

            if status == 429 or status >= 500:
                if attempt == self.max_attempts:
                    detail = _error_detail(response)
                    if status == 429:
                        raise WrikeRateLimitError(
                            f"Wrike rate limited (429): {detail}", status_code=status, detail=detail
                        )
                    raise WrikeAPIError(f"Wrike API error ({status}): {detail}", status_code=status, detail=detail)
                await asyncio.sleep(backoff_s)
                backoff_s *= 2
                continue

            if status < 200 or status >= 300:
                detail = _error_detail(response)
                raise WrikeAPIError(f"Wrike API error ({status}): {detail}", status_code=status, detail=detail)

            try:
                return response.json()  # type: ignore[no-any-return]
            except ValueError as exc:
                raise WrikeAPIError(f"Wrike API returned invalid JSON: {exc}", status_code=status) from exc

        raise WrikeAPIError("Unexpected Wrike request failure")

    async def test_connection(self) -> dict[str, Any]:
        """GET /account: lightweight authenticated probe."""
        data = await self._request("GET", "/account")
        rows = data.get("data")
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        return {}

    async def create_task_in_folder(self, folder_id: str, payload: dict[str, Any]) -> WrikeTask:
        data = await self._request("POST", f"/folders/{folder_id}/tasks", json=payload)
        rows = data.get("data")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise WrikeAPIError("Wrike create task returned no task.")
        task = _coerce_task(rows[0])
        if not task.id:
            raise WrikeAPIError("Wrike create task returned no id.")
        return task

    async def set_task_dates(self, task_id: str, start_date: str | None, due_date: str | None) -> dict[str, Any]:
        dates: dict[str, str] = {"type": "Planned"}
        if start_date:
            dates["start"] = start_date
        if due_date:
            dates["due"] = due_date
        return await self._request("PUT", f"/tasks/{task_id}", json={"dates": dates})

    async def update_task(self, task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/tasks/{task_id}", json=updates)

    async def find_task_by_permalink(self, permalink: str) -> Optional[WrikeTask]:
        data = await self._request("GET", "/tasks", params={"permalink": permalink})
        rows = data.get("data")
        if not isinstance(rows, list):
            return None
        for row in rows:
            if isinstance(row, dict) and row.get("id"):
                return _coerce_task(row)
        return None

    async def list_recent_tasks(self, *, limit: int = 100) -> list[WrikeTask]:
        params = {
            "sortField": "CreatedDate",
            "sortOrder": "Desc",
            "pageSize": str(max(1, limit)),
        }
        data = await self._request("GET", "/tasks", params=params)
        rows = data.get("data")
        if not isinstance(rows, list):
            return []
        return [_coerce_task(row) for row in rows if isinstance(row, dict) and row.get("id")]


def get_wrike_service(config: Settings | None = None) -> WrikeService:
    config = config or settings
    return WrikeService(
        access_token=config.wrike_access_token,
        api_url=config.wrike_api_url,
        timeout_s=config.wrike_timeout_s,
    )

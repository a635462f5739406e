import json
import os
from functools import lru_cache


def _parse_mapping(raw: str | None) -> dict[str, str]:
  """Parse `{"a": "b"}` JSON or `a=b,c=d` lists into a string mapping."""
  raw = (raw or "").strip()
  if not raw:
    return {}
  if raw.startswith("{"):
    try:
      value = json.loads(raw)
    except json.JSONDecodeError:
      return {}
    if not isinstance(value, dict):
      return {}
    return {str(k).strip(): str(v).strip() for k, v in value.items() if str(k).strip() and str(v).strip()}

  mapping: dict[str, str] = {}
  for pair in raw.split(","):
    key, sep, value = pair.partition("=")
    if not sep:
      continue
    key, value = key.strip(), value.strip()
    if key and value:
      mapping[key] = value
  return mapping


def _env_flag(name: str, default: str = "0") -> bool:
  return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
  """Centralized configuration pulled from environment variables."""

  app_name: str = "Slack Wrike Bridge"
  app_version: str = os.getenv("APP_VERSION", "0.1.0")

  slack_bot_token: str
  slack_signing_secret: str
  slack_verify_signatures: bool
  slack_timeout_s: float
  slack_task_command: str
  slack_task_channel_id: str | None

  wrike_access_token: str
  wrike_api_url: str
  wrike_permalink_base: str
  wrike_timeout_s: float
  wrike_default_folder_id: str
  wrike_channel_folder_map: dict[str, str]
  wrike_assignee_field_id: str | None
  wrike_description_field_id: str | None
  wrike_custom_status_ids: dict[str, str]
  wrike_lookup_scan_limit: int

  supabase_url: str | None
  supabase_service_role: str | None
  tasks_table: str
  store_timeout_s: float
  store_max_attempts: int
  store_backoff_s: float
  store_cooldown_s: float

  notify_on_date_failure: bool
  error_logging_enabled: bool

  def __init__(self) -> None:
    self.slack_bot_token = os.getenv("SLACK_BOT_TOKEN", "")
    self.slack_signing_secret = os.getenv("SLACK_SIGNING_SECRET", "")
    self.slack_verify_signatures = _env_flag("SLACK_VERIFY_SIGNATURES", "1")
    # Slack drops interaction responses after ~3s; keep every outbound call below that
    self.slack_timeout_s = float(os.getenv("SLACK_TIMEOUT_SECONDS", "2.5"))
    self.slack_task_command = os.getenv("SLACK_TASK_COMMAND", "/task").strip() or "/task"
    self.slack_task_channel_id = os.getenv("SLACK_TASK_CHANNEL_ID") or None

    self.wrike_access_token = os.getenv("WRIKE_ACCESS_TOKEN", "")
    self.wrike_api_url = os.getenv("WRIKE_API_URL", "https://www.wrike.com/api/v4").rstrip("/")
    self.wrike_permalink_base = os.getenv(
        "WRIKE_PERMALINK_BASE",
        "https://www.wrike.com/open.htm",
    )
    self.wrike_timeout_s = float(os.getenv("WRIKE_TIMEOUT_SECONDS", "2.5"))
    self.wrike_default_folder_id = os.getenv("WRIKE_DEFAULT_FOLDER_ID", "")
    self.wrike_channel_folder_map = _parse_mapping(os.getenv("WRIKE_CHANNEL_FOLDER_MAP"))
    self.wrike_assignee_field_id = os.getenv("WRIKE_ASSIGNEE_FIELD_ID") or None
    self.wrike_description_field_id = os.getenv("WRIKE_DESCRIPTION_FIELD_ID") or None
    self.wrike_custom_status_ids = _parse_mapping(os.getenv("WRIKE_CUSTOM_STATUS_IDS"))
    self.wrike_lookup_scan_limit = int(os.getenv("WRIKE_LOOKUP_SCAN_LIMIT", "100"))

    self.supabase_url = os.getenv("SUPABASE_URL")
    self.supabase_service_role = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv(
        "SUPABASE_SERVICE_ROLE"
    )
    self.tasks_table = os.getenv("TASKS_TABLE", "wrike_tasks")
    self.store_timeout_s = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
    self.store_max_attempts = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
    self.store_backoff_s = float(os.getenv("STORE_BACKOFF_SECONDS", "0.5"))
    self.store_cooldown_s = float(os.getenv("STORE_COOLDOWN_SECONDS", "30"))

    self.notify_on_date_failure = _env_flag("NOTIFY_ON_DATE_FAILURE")
    self.error_logging_enabled = _env_flag("ENABLE_ERROR_LOGGING")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  return Settings()


settings = get_settings()

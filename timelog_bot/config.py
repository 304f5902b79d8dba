import os
from functools import lru_cache


class Settings:
  """Centralized configuration pulled from environment variables."""

  app_name: str = "Timelog Bot"
  app_version: str = os.getenv("APP_VERSION", "0.0.1")

  supabase_url: str | None
  supabase_service_role: str | None

  slack_bot_user_id: str | None
  openai_api_key: str | None
  openai_model_primary: str
  openai_model_fallback: str | None

  default_timezone: str
  event_processing_mode: str
  user_refresh_interval_hours: int
  pending_selection_ttl_hours: int
  usage_logging_enabled: bool
  report_admins: frozenset[str]
  log_level: str

  def __init__(self) -> None:
    self.supabase_url = os.getenv("SUPABASE_URL")
    self.supabase_service_role = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv(
        "SUPABASE_SERVICE_ROLE"
    )

    # resolved via auth.test on first use when unset
    self.slack_bot_user_id = os.getenv("SLACK_BOT_USER_ID") or None

    self.openai_api_key = os.getenv("OPENAI_API_KEY", "").strip() or None
    self.openai_model_primary = os.getenv("OPENAI_MODEL_PRIMARY", "").strip() or "gpt-4o-mini"
    self.openai_model_fallback = os.getenv("OPENAI_MODEL_FALLBACK", "").strip() or None

    self.default_timezone = os.getenv("DEFAULT_TIMEZONE", "America/Los_Angeles")

    mode = os.getenv("EVENT_PROCESSING_MODE", "background").strip().lower()
    self.event_processing_mode = mode if mode in {"background", "inline"} else "background"

    self.user_refresh_interval_hours = int(os.getenv("USER_REFRESH_INTERVAL_HOURS", "24"))
    self.pending_selection_ttl_hours = int(os.getenv("PENDING_SELECTION_TTL_HOURS", "24"))

    self.usage_logging_enabled = os.getenv("ENABLE_USAGE_LOGGING", "0") == "1"

    # Slack user ids allowed to run /team_log
    self.report_admins = frozenset(
        uid.strip() for uid in os.getenv("REPORT_ADMINS", "").split(",") if uid.strip()
    )

    self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  return Settings()


settings = get_settings()

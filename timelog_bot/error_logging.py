"""Record unexpected handler failures in ``app_error_events``.

The event and interaction handlers swallow their exceptions so Slack always
gets a 200. Each swallowed failure is written here as well as to the Python
log, so it can be looked up later by event id, Slack user or message ts.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from supabase import Client

from .config import settings
from .services.database import DatabaseConfigurationError, get_supabase_admin_client, utc_now_iso

logger = logging.getLogger(__name__)

ERROR_EVENT_COLUMNS = frozenset(
    {
        "occurred_at",
        "tool",
        "severity",
        "message",
        "route",
        "slack_user_id",
        "channel_id",
        "event_id",
        "message_ts",
    }
)


def build_error_row(payload: dict[str, Any]) -> dict[str, Any]:
    """Map ``payload`` onto table columns. Keys without a column end up in ``meta``."""
    row = {k: v for k, v in payload.items() if k in ERROR_EVENT_COLUMNS and v is not None}
    extras = {k: v for k, v in payload.items() if k not in ERROR_EVENT_COLUMNS and k != "meta" and v is not None}
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    if meta or extras:
        row["meta"] = {**meta, **extras}
    row.setdefault("occurred_at", utc_now_iso())
    row.setdefault("tool", "timelog_bot")
    return row


class AppErrorLogger:
    def __init__(self, client_factory: Callable[[], Client] = get_supabase_admin_client) -> None:
        self._client_factory = client_factory

    def log(self, payload: dict[str, Any]) -> None:
        if not settings.usage_logging_enabled:
            return
        try:
            client = self._client_factory()
        except DatabaseConfigurationError:
            logger.warning("Skipping error event: Supabase credentials are not configured")
            return

        try:
            client.table("app_error_events").insert(build_error_row(payload)).execute()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not store error event for %s: %s", payload.get("route"), exc)


error_logger = AppErrorLogger()

"""Per-user LLM token accounting in ``ai_token_usage``.

The parse that produced the usage has already succeeded when this runs, so a
failed insert is only logged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..config import settings
from .database import get_supabase_admin_client

logger = logging.getLogger(__name__)

# ai_token_usage column -> ChatCompletionResult key
_USAGE_FIELDS = {
    "prompt_tokens": "tokens_in",
    "completion_tokens": "tokens_out",
    "total_tokens": "tokens_total",
    "model": "model",
}


def build_usage_row(
    *,
    tool: str,
    slack_user_id: str,
    completion: Mapping[str, Any],
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    row: dict[str, Any] = {"tool": tool, "slack_user_id": slack_user_id}
    for column, key in _USAGE_FIELDS.items():
        if completion.get(key) is not None:
            row[column] = completion[key]
    if meta:
        row["meta"] = meta
    return row


async def log_ai_token_usage(
    *,
    tool: str,
    slack_user_id: str | None,
    completion: Mapping[str, Any],
    meta: dict[str, Any] | None = None,
) -> None:
    if not settings.usage_logging_enabled or not slack_user_id:
        return

    row = build_usage_row(tool=tool, slack_user_id=slack_user_id, completion=completion, meta=meta)
    try:
        db = get_supabase_admin_client()
        await asyncio.to_thread(lambda: db.table("ai_token_usage").insert(row).execute())
    except Exception as exc:  # noqa: BLE001
        logger.warning("Token usage for %s (%s) not recorded: %s", tool, slack_user_id, exc)

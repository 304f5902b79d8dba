"""Slack Events API handling: dedup gate, classification, parse, commit or prompt."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

from ...error_logging import error_logger
from ..event_ledger import PendingSelection
from .blocks import build_project_picker_blocks
from .entry_commit import commit_entries
from .message_parser import (
    NeedsProjectSelection,
    ParsedEntries,
    ParseFailure,
    UnknownUsers,
)
from .runtime_deps import SlackClientProtocol, TimelogRuntimeDeps


class SlackEventKind(str, Enum):
    APP_MENTION = "app_mention"
    DIRECT_MESSAGE = "direct_message"
    UNHANDLED = "unhandled"


def is_bot_event(event: dict[str, Any]) -> bool:
    return bool(event.get("bot_id")) or event.get("subtype") == "bot_message"


def classify_event(event: dict[str, Any]) -> SlackEventKind:
    event_type = event.get("type")
    if event_type == "app_mention":
        return SlackEventKind.APP_MENTION
    if event_type == "message" and event.get("channel_type") == "im" and not event.get("subtype"):
        return SlackEventKind.DIRECT_MESSAGE
    return SlackEventKind.UNHANDLED


async def handle_event(envelope: dict[str, Any], *, deps: TimelogRuntimeDeps) -> None:
    """Process one ``event_callback`` envelope. Never raises."""
    logger = deps.logger
    inner = envelope.get("event")
    if not isinstance(inner, dict):
        return

    # Bot messages never reach the ledger, not even as dedup markers.
    if is_bot_event(inner):
        return

    event_id = str(envelope.get("event_id") or "").strip() or None
    event_type = str(inner.get("type") or "")
    text = str(inner.get("text") or "")
    message_ts = str(inner.get("ts") or "").strip()
    channel = str(inner.get("channel") or "").strip()
    slack_user_id = str(inner.get("user") or "").strip()

    try:
        event_log_id: Optional[int] = None
        if event_id:
            event_log_id = await asyncio.to_thread(
                deps.ledger.record_if_new,
                event_id,
                event_type,
                text,
                message_ts=message_ts or None,
                channel_id=channel or None,
                user_id=slack_user_id or None,
            )
            if event_log_id is None:
                logger.info("Skipping duplicate event: %s", event_id)
                return

        kind = classify_event(inner)
        logger.debug("Handling event type: %s (%s)", event_type, kind.value)
        if kind is SlackEventKind.UNHANDLED:
            logger.debug("Ignoring unhandled event type: %s", event_type)
            return

        if not slack_user_id or not channel or not message_ts:
            logger.warning("Event %s missing user/channel/ts; dropping", event_id)
            return

        await _process_time_log_message(
            text=text,
            slack_user_id=slack_user_id,
            channel=channel,
            message_ts=message_ts,
            event_log_id=event_log_id,
            deps=deps,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Error handling event %s: %s", event_id, exc, exc_info=True)
        error_logger.log(
            {
                "severity": "error",
                "message": str(exc),
                "route": "slack.events",
                "event_id": event_id,
                "slack_user_id": slack_user_id or None,
                "channel_id": channel or None,
                "message_ts": message_ts or None,
            }
        )


async def _process_time_log_message(
    *,
    text: str,
    slack_user_id: str,
    channel: str,
    message_ts: str,
    event_log_id: Optional[int],
    deps: TimelogRuntimeDeps,
) -> None:
    logger = deps.logger
    logger.info("Processing time log from %s: %s", slack_user_id, text)

    slack = deps.get_slack_service_fn()
    try:
        users = deps.user_service_factory(slack)
        user = await users.find_or_create(slack_user_id)

        result = await deps.parse_message_fn(
            text=text,
            user_timezone=user.timezone,
            requesting_user_id=slack_user_id,
            users=users,
            projects=deps.projects,
        )

        if isinstance(result, ParseFailure):
            await slack.post_ephemeral(channel=channel, user=slack_user_id, text=result.message)
            return

        if isinstance(result, UnknownUsers):
            unknown = ", ".join(result.user_ids)
            await slack.post_ephemeral(
                channel=channel,
                user=slack_user_id,
                text=f"I couldn't find these users: {unknown}. Please check the mentions and try again.",
            )
            return

        if isinstance(result, NeedsProjectSelection):
            await _prompt_project_selection(
                result,
                text=text,
                slack_user_id=slack_user_id,
                channel=channel,
                message_ts=message_ts,
                slack=slack,
                deps=deps,
            )
            return

        if isinstance(result, ParsedEntries):
            await commit_entries(
                result.entries,
                logged_by=slack_user_id,
                channel=channel,
                message_ts=message_ts,
                event_log_id=event_log_id,
                users=users,
                slack=slack,
                deps=deps,
            )
            return

        logger.warning("Unexpected parse result type: %s", type(result).__name__)
    finally:
        await slack.aclose()


async def _prompt_project_selection(
    result: NeedsProjectSelection,
    *,
    text: str,
    slack_user_id: str,
    channel: str,
    message_ts: str,
    slack: SlackClientProtocol,
    deps: TimelogRuntimeDeps,
) -> None:
    pending = PendingSelection(
        entries=result.entries,
        suggested_project_name=result.suggested_project_name,
        original_message=text,
    )
    await asyncio.to_thread(
        deps.ledger.put_pending_selection,
        message_ts,
        channel,
        slack_user_id,
        pending,
        text,
    )

    project_names = await asyncio.to_thread(deps.projects.list_names)
    blocks = build_project_picker_blocks(
        project_names,
        message_ts=message_ts,
        suggested_project=result.suggested_project_name,
    )
    await slack.post_ephemeral(
        channel=channel,
        user=slack_user_id,
        text="Please select a project",
        blocks=blocks,
    )

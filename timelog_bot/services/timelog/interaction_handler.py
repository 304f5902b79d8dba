"""Slack interactivity: project picker selections and the create-project modal.

Both paths resolve a pending selection stored by the event handler, commit it,
and only then clear it. A pending row that is missing, expired or garbled is
reported to the user as lost context.
"""

from __future__ import annotations

import asyncio
from datetime import date
from enum import Enum
from typing import Any, Optional

from ...error_logging import error_logger
from ..event_ledger import PendingSelection
from ..projects import Project, ProjectExistsError
from ..user_service import UserService
from .blocks import (
    CREATE_PROJECT_CALLBACK_ID,
    NEW_PROJECT_VALUE,
    PROJECT_NAME_ACTION_ID,
    PROJECT_NAME_BLOCK_ID,
    SELECT_PROJECT_ACTION_ID,
    build_new_project_modal,
    build_notice_modal,
    decode_modal_metadata,
    decode_selection_block_id,
)
from .entry_commit import commit_entries
from .message_parser import TimeEntryDraft
from .runtime_deps import SlackClientProtocol, TimelogRuntimeDeps

LOST_CONTEXT_MESSAGE = "Sorry, I lost track of that request. Please try logging your time again."
ALREADY_LOGGED_MESSAGE = "That time was already logged. Nothing else to do here."


class SlackInteractionKind(str, Enum):
    BLOCK_ACTIONS = "block_actions"
    VIEW_SUBMISSION = "view_submission"
    UNHANDLED = "unhandled"


def classify_interaction(payload: dict[str, Any]) -> SlackInteractionKind:
    try:
        return SlackInteractionKind(str(payload.get("type") or ""))
    except ValueError:
        return SlackInteractionKind.UNHANDLED


def _field_error(message: str) -> dict[str, Any]:
    return {"response_action": "errors", "errors": {PROJECT_NAME_BLOCK_ID: message}}


def _dict_at(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


async def handle_interaction(payload: dict[str, Any], *, deps: TimelogRuntimeDeps) -> Optional[dict[str, Any]]:
    """Process one interactivity payload.

    Returns a response body for ``view_submission`` (field errors or a modal
    update); ``None`` means "acknowledge with an empty 200". Never raises.
    """
    logger = deps.logger
    kind = classify_interaction(payload)
    logger.debug("Handling interactive payload type: %s", kind.value)

    try:
        if kind is SlackInteractionKind.BLOCK_ACTIONS:
            await _handle_block_actions(payload, deps=deps)
            return None
        if kind is SlackInteractionKind.VIEW_SUBMISSION:
            return await _handle_view_submission(payload, deps=deps)
        logger.debug("Ignoring unhandled interactive type: %s", payload.get("type"))
        return None
    except Exception as exc:  # noqa: BLE001
        logger.error("Error handling interactive payload: %s", exc, exc_info=True)
        error_logger.log(
            {
                "severity": "error",
                "message": str(exc),
                "route": "slack.interactions",
                "slack_user_id": _dict_at(payload, "user").get("id"),
                "meta": {"interaction_type": payload.get("type")},
            }
        )
        return None


async def _handle_block_actions(payload: dict[str, Any], *, deps: TimelogRuntimeDeps) -> None:
    actions = payload.get("actions")
    if not isinstance(actions, list) or not actions:
        return

    action = actions[0] if isinstance(actions[0], dict) else {}
    action_id = str(action.get("action_id") or "")
    if action_id != SELECT_PROJECT_ACTION_ID:
        deps.logger.debug("Ignoring unhandled action: %s", action_id)
        return

    slack_user_id = str(_dict_at(payload, "user").get("id") or "").strip()
    channel_id = str(_dict_at(payload, "channel").get("id") or "").strip()
    trigger_id = str(payload.get("trigger_id") or "").strip()
    selected_value = str(_dict_at(action, "selected_option").get("value") or "").strip()
    message_ts = decode_selection_block_id(action.get("block_id"))

    pending = await asyncio.to_thread(deps.ledger.get_pending_selection, message_ts) if message_ts else None

    slack = deps.get_slack_service_fn()
    try:
        if pending is None:
            deps.logger.error("No pending selection found for message_ts: %s", message_ts)
            if channel_id and slack_user_id:
                await slack.post_ephemeral(channel=channel_id, user=slack_user_id, text=LOST_CONTEXT_MESSAGE)
            return

        if selected_value == NEW_PROJECT_VALUE:
            view = build_new_project_modal(
                message_ts=message_ts or "",
                suggested_name=pending.suggested_project_name,
            )
            await slack.open_modal(trigger_id=trigger_id, view=view)
            return

        if not selected_value:
            return

        project = await asyncio.to_thread(deps.projects.find_or_create_by_name, selected_value)
        await _commit_pending_selection(
            pending,
            project,
            logged_by=slack_user_id,
            channel=channel_id or pending.channel_id or "",
            slack=slack,
            deps=deps,
        )
    finally:
        await slack.aclose()


async def _handle_view_submission(payload: dict[str, Any], *, deps: TimelogRuntimeDeps) -> Optional[dict[str, Any]]:
    view = _dict_at(payload, "view")
    callback_id = view.get("callback_id")
    if callback_id != CREATE_PROJECT_CALLBACK_ID:
        deps.logger.debug("Ignoring unhandled view submission: %s", callback_id)
        return None

    slack_user_id = str(_dict_at(payload, "user").get("id") or "").strip()
    values = _dict_at(_dict_at(view, "state"), "values")
    name_input = _dict_at(_dict_at(values, PROJECT_NAME_BLOCK_ID), PROJECT_NAME_ACTION_ID)
    project_name = str(name_input.get("value") or "").strip()

    if not project_name:
        return _field_error("Project name is required")

    existing = await asyncio.to_thread(deps.projects.find_by_name, project_name)
    if existing:
        return _field_error("A project with this name already exists")

    try:
        project = await asyncio.to_thread(deps.projects.create, project_name)
    except ProjectExistsError:
        return _field_error("A project with this name already exists")

    message_ts = decode_modal_metadata(view.get("private_metadata"))
    pending = await asyncio.to_thread(deps.ledger.get_pending_selection, message_ts) if message_ts else None
    if pending is None:
        deps.logger.error("No pending selection for modal submission (message_ts=%s)", message_ts)
        return {"response_action": "update", "view": build_notice_modal(LOST_CONTEXT_MESSAGE)}

    slack = deps.get_slack_service_fn()
    try:
        await _commit_pending_selection(
            pending,
            project,
            logged_by=slack_user_id,
            channel=pending.channel_id or "",
            slack=slack,
            deps=deps,
        )
    finally:
        await slack.aclose()
    return None


async def _commit_pending_selection(
    pending: PendingSelection,
    project: Project,
    *,
    logged_by: str,
    channel: str,
    slack: SlackClientProtocol,
    deps: TimelogRuntimeDeps,
) -> bool:
    """Commit ``pending`` under ``project`` and clear it.

    Returns False when another selection for the same message already holds
    the commit claim.
    """
    message_ts = pending.message_ts or ""
    event_log_id = await asyncio.to_thread(
        deps.ledger.find_or_create_audit_record, message_ts, pending.original_message
    )

    if not await asyncio.to_thread(deps.ledger.claim_commit, message_ts):
        deps.logger.warning("Pending selection %s is already being committed", message_ts)
        # Entries on the audit row mean the claim holder finished but never
        # cleared the pending row.
        if await asyncio.to_thread(deps.time_entries.count_for_event_log, event_log_id):
            await asyncio.to_thread(deps.ledger.clear_pending_selection, message_ts)
        if channel and logged_by:
            await slack.post_ephemeral(channel=channel, user=logged_by, text=ALREADY_LOGGED_MESSAGE)
        return False

    drafts = [
        TimeEntryDraft(
            user_id=entry.user_id,
            minutes=entry.minutes,
            project=project.name,
            entry_date=date.fromisoformat(entry.date),
            notes=entry.notes,
        )
        for entry in pending.entries
    ]
    users: UserService = deps.user_service_factory(slack)
    try:
        await commit_entries(
            drafts,
            logged_by=logged_by,
            channel=channel,
            message_ts=message_ts,
            event_log_id=event_log_id,
            users=users,
            slack=slack,
            deps=deps,
        )
    except Exception:
        if not await asyncio.to_thread(deps.time_entries.count_for_event_log, event_log_id):
            await asyncio.to_thread(deps.ledger.release_commit_claim, message_ts)
        raise
    await asyncio.to_thread(deps.ledger.clear_pending_selection, message_ts)
    deps.logger.info("Committed pending selection %s under project %s", message_ts, project.name)
    return True

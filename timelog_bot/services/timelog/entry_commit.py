"""Shared commit step for both handlers: drafts in, time entries + reaction out."""

from __future__ import annotations

import asyncio
from typing import Optional

from ..user_service import UserService
from .message_parser import TimeEntryDraft
from .runtime_deps import SlackClientProtocol, TimelogRuntimeDeps

ACK_REACTION = "white_check_mark"


async def commit_entries(
    drafts: list[TimeEntryDraft],
    *,
    logged_by: str,
    channel: str,
    message_ts: str,
    event_log_id: Optional[int],
    users: UserService,
    slack: SlackClientProtocol,
    deps: TimelogRuntimeDeps,
) -> int:
    """Create one time entry per draft, then acknowledge the message once.

    ``event_log_id`` is the ledger row that caused the commit (or None when
    the event carried no id).
    """
    for draft in drafts:
        entry_user = await users.find_or_create(draft.user_id)
        project = await asyncio.to_thread(deps.projects.find_or_create_by_name, draft.project)
        await asyncio.to_thread(
            deps.time_entries.create,
            user_id=entry_user.id,
            project_id=project.id,
            minutes=draft.minutes,
            entry_date=draft.entry_date,
            notes=draft.notes,
            logged_by_slack_id=logged_by,
            event_log_id=event_log_id,
        )
        deps.logger.debug(
            "Created time entry: %s - %dmin on %s", entry_user.slack_user_id, draft.minutes, project.name
        )

    if channel and message_ts:
        await slack.add_reaction(channel=channel, timestamp=message_ts, name=ACK_REACTION)

    deps.logger.info("Created %d time entries", len(drafts))
    return len(drafts)

"""Slash commands that list logged time.

``/log [days]`` lists the caller's own entries and ``/team_log [days]`` lists
everyone's; the latter is limited to the Slack ids in ``REPORT_ADMINS``. The
window defaults to 60 days and accepts 1 through 365.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from ...config import settings
from ...error_logging import error_logger
from ..time_entries import TimeEntry
from .message_parser import user_now
from .runtime_deps import SlackClientProtocol, TimelogRuntimeDeps

DEFAULT_DAYS = 60
MAX_DAYS = 365

PROCESSING_MESSAGE = "⏳ Processing your request..."
PERMISSION_DENIED_MESSAGE = (
    "Sorry, you don't have permission to view team logs. Contact an admin if you need access."
)

_LEADING_NUMBER_RE = re.compile(r"^\s*(\d+)")


class SlackCommandKind(str, Enum):
    LOG = "/log"
    TEAM_LOG = "/team_log"
    UNHANDLED = "unhandled"


def classify_command(form: dict[str, str]) -> SlackCommandKind:
    try:
        return SlackCommandKind(str(form.get("command") or "").strip())
    except ValueError:
        return SlackCommandKind.UNHANDLED


def parse_days_argument(text: Optional[str]) -> int:
    """Leading integer of the command text; anything outside 1..365 means the default."""
    match = _LEADING_NUMBER_RE.match(text or "")
    days = int(match.group(1)) if match else 0
    return days if 1 <= days <= MAX_DAYS else DEFAULT_DAYS


def is_report_admin(slack_user_id: str) -> bool:
    return slack_user_id in settings.report_admins


def ephemeral(text: str) -> dict[str, Any]:
    return {"response_type": "ephemeral", "text": text}


def _failure_message(kind: SlackCommandKind) -> str:
    what = "team logs" if kind is SlackCommandKind.TEAM_LOG else "your logs"
    return f"Sorry, something went wrong while fetching {what}. Please try again."


def _format_hours(hours: float) -> str:
    return f"{hours:g}"


def format_entry_line(
    entry: TimeEntry,
    *,
    subject: str,
    logged_by: str,
    project: str,
) -> str:
    notes = entry.notes or "-"
    return (
        f"• `{entry.id}` | *{entry.date}* | @{subject} | Logged by {logged_by} | "
        f"*{project}* | {_format_hours(entry.hours)}h | {notes}"
    )


async def _list_entries(
    kind: SlackCommandKind,
    slack_user_id: str,
    days: int,
    *,
    deps: TimelogRuntimeDeps,
    slack: SlackClientProtocol,
) -> dict[str, Any]:
    users = deps.user_service_factory(slack)
    requester = await users.find_or_create(slack_user_id)
    own = kind is SlackCommandKind.LOG

    today = user_now(requester.timezone).date()
    entries = await asyncio.to_thread(
        deps.time_entries.list_between,
        today - timedelta(days=days),
        today,
        user_id=requester.id if own else None,
    )
    if not entries:
        if own:
            return ephemeral(f"You don't have any time entries in the last {days} days.")
        return ephemeral(f"No time entries found in the last {days} days.")

    subjects = await asyncio.to_thread(users.names_by_id, [e.user_id for e in entries])
    loggers = await asyncio.to_thread(users.names_by_slack_id, [e.logged_by_slack_id for e in entries])
    projects = await asyncio.to_thread(deps.projects.names_by_id, [e.project_id for e in entries])

    whose = "Your" if own else "Team"
    lines = [f"*{whose} time entries for the last {days} days:*"]
    for entry in entries:
        if entry.logged_by_slack_id == requester.slack_user_id:
            logged_by = "you"
        else:
            logged_by = loggers.get(entry.logged_by_slack_id, entry.logged_by_slack_id or "unknown")
        lines.append(
            format_entry_line(
                entry,
                subject=subjects.get(entry.user_id, "unknown"),
                logged_by=logged_by,
                project=projects.get(entry.project_id, "unknown"),
            )
        )
    total_minutes = sum(e.minutes for e in entries)
    lines.append(f"*Total: {_format_hours(round(total_minutes / 60, 2))}h across {len(entries)} entries*")
    return ephemeral("\n".join(lines))


async def build_command_response(
    form: dict[str, str],
    *,
    deps: TimelogRuntimeDeps,
    slack: SlackClientProtocol,
) -> dict[str, Any]:
    """Reply body for one slash command. Failures become an apology, never an exception."""
    kind = classify_command(form)
    command = str(form.get("command") or "")
    slack_user_id = str(form.get("user_id") or "").strip()

    if kind is SlackCommandKind.UNHANDLED:
        return {"text": f"Unknown command: {command}"}
    if kind is SlackCommandKind.TEAM_LOG and not is_report_admin(slack_user_id):
        return ephemeral(PERMISSION_DENIED_MESSAGE)

    try:
        return await _list_entries(
            kind,
            slack_user_id,
            parse_days_argument(form.get("text")),
            deps=deps,
            slack=slack,
        )
    except Exception as exc:  # noqa: BLE001
        deps.logger.error("Error handling %s for %s: %s", command, slack_user_id, exc, exc_info=True)
        error_logger.log(
            {
                "severity": "error",
                "message": str(exc),
                "route": "slack.commands",
                "slack_user_id": slack_user_id or None,
                "meta": {"command": command},
            }
        )
        return ephemeral(_failure_message(kind))


async def handle_command(form: dict[str, str], *, deps: TimelogRuntimeDeps) -> Optional[dict[str, Any]]:
    """Answer one slash command.

    With a ``response_url`` the reply is posted there and ``None`` is returned;
    without one the reply body is returned for the HTTP response. Never raises.
    """
    response_url = str(form.get("response_url") or "").strip()
    try:
        slack = deps.get_slack_service_fn()
    except Exception as exc:  # noqa: BLE001
        deps.logger.error("Slack client unavailable for %s: %s", form.get("command"), exc)
        return None if response_url else ephemeral(_failure_message(classify_command(form)))

    try:
        response = await build_command_response(form, deps=deps, slack=slack)
        if not response_url:
            return response
        try:
            await slack.post_to_response_url(response_url, response)
        except Exception as exc:  # noqa: BLE001
            deps.logger.error("Could not deliver %s reply: %s", form.get("command"), exc)
            error_logger.log(
                {
                    "severity": "error",
                    "message": str(exc),
                    "route": "slack.commands",
                    "slack_user_id": form.get("user_id") or None,
                    "meta": {"command": form.get("command")},
                }
            )
        return None
    finally:
        await slack.aclose()

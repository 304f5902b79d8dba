"""Turn a free-text Slack message into time entries via the LLM.

``parse_message`` never raises for model or parsing problems; every outcome is
one of the ``ParseResult`` variants and the caller branches on its type.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..ai_token_usage_logger import log_ai_token_usage
from ..event_ledger import PendingEntry
from .openai_client import (
    ChatCompletionResult,
    ChatMessage,
    OpenAIError,
    call_chat_completion,
    parse_json_response,
)

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 70

LLM_UNAVAILABLE_MESSAGE = "I'm having trouble understanding right now. Please try again in a moment. 🙏"
MALFORMED_RESPONSE_MESSAGE = "I couldn't understand my own response. Please try again."
GENERIC_FAILURE_MESSAGE = "Something went wrong parsing your message. Try rephrasing it?"
NO_ENTRIES_MESSAGE = "I couldn't find any time to log in that message. Try something like `2h on Alpha`."


@dataclass(frozen=True)
class TimeEntryDraft:
    user_id: str
    minutes: int
    project: str
    entry_date: date
    notes: Optional[str] = None


@dataclass(frozen=True)
class ParsedEntries:
    entries: list[TimeEntryDraft]


@dataclass(frozen=True)
class NeedsProjectSelection:
    entries: list[PendingEntry]
    suggested_project_name: Optional[str] = None


@dataclass(frozen=True)
class UnknownUsers:
    user_ids: list[str]


@dataclass(frozen=True)
class ParseFailure:
    message: str


ParseResult = Union[ParsedEntries, NeedsProjectSelection, UnknownUsers, ParseFailure]

CompletionFn = Callable[[list[ChatMessage]], Awaitable[ChatCompletionResult]]


_SYSTEM_PROMPT = """You extract time log entries from Slack messages.

Current date and time for the user: {current_datetime}
User timezone: {user_timezone}
Requesting user id: {requesting_user_id}
Known projects: {project_list}

Rules:
- A message may log time for the requesting user or for mentioned users (<@U123>).
  When nobody else is mentioned, the entry belongs to {requesting_user_id}.
- Convert durations to whole minutes ("1.5h" = 90).
- Resolve relative dates ("yesterday", "last friday") against the current date; output YYYY-MM-DD.
- Match projects against the known list. Give project_confidence 0-100.
  If the project is unclear or new, set needs_clarification and suggest a name.
- Mentions that are not user ids go in unknown_user_mentions.
- If the message is not a time log, return an error string and no entries.

Respond with JSON only:
{{"entries": [{{"user_id": "U123", "minutes": 120, "project": "Alpha", "project_confidence": 95,
  "date": "2024-01-15", "notes": "optional"}}],
 "needs_clarification": false, "suggested_project_name": null,
 "unknown_user_mentions": [], "error": null}}"""


def user_now(user_timezone: str) -> datetime:
    try:
        tz = ZoneInfo(user_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, using UTC", user_timezone)
        tz = timezone.utc
    return datetime.now(tz)


def build_system_prompt(
    *,
    current_datetime: str,
    user_timezone: str,
    requesting_user_id: str,
    project_names: list[str],
) -> str:
    return _SYSTEM_PROMPT.format(
        current_datetime=current_datetime,
        user_timezone=user_timezone,
        requesting_user_id=requesting_user_id,
        project_list=", ".join(project_names) if project_names else "(none yet)",
    )


def _entry_date(entry: dict[str, Any], today: date) -> date:
    raw = str(entry.get("date") or "").strip()
    return date.fromisoformat(raw) if raw else today


def _entry_minutes(entry: dict[str, Any]) -> int:
    try:
        return int(round(float(entry.get("minutes") or 0)))
    except (TypeError, ValueError):
        return 0


def _entry_confidence(entry: dict[str, Any]) -> float:
    try:
        return float(entry.get("project_confidence") or 0)
    except (TypeError, ValueError):
        return 0.0


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


async def _find_unknown_users(
    entries: list[dict[str, Any]],
    unknown_mentions: list[Any],
    *,
    users: Any,
    bot_user_id: str | None,
) -> list[str]:
    unknown = [str(m) for m in unknown_mentions if m]
    for entry in entries:
        user_id = entry.get("user_id")
        if not user_id or user_id == bot_user_id:
            continue
        if not await users.is_valid_slack_user(str(user_id)):
            unknown.append(str(user_id))
    return _dedupe(unknown)


async def parse_message(
    *,
    text: str,
    user_timezone: str,
    requesting_user_id: str,
    users: Any,
    projects: Any,
    complete_fn: CompletionFn | None = None,
) -> ParseResult:
    """Extract entries from ``text``. ``users`` is a UserService, ``projects`` a ProjectService."""
    complete = complete_fn or call_chat_completion
    logger.debug("Parsing message: %s", text)

    try:
        project_names = await asyncio.to_thread(projects.list_names)
        now = user_now(user_timezone)
        messages: list[ChatMessage] = [
            {
                "role": "system",
                "content": build_system_prompt(
                    current_datetime=now.strftime("%Y-%m-%d %H:%M:%S %Z (%A)"),
                    user_timezone=user_timezone,
                    requesting_user_id=requesting_user_id,
                    project_names=project_names,
                ),
            },
            {"role": "user", "content": text},
        ]

        completion = await complete(messages)
        await log_ai_token_usage(tool="timelog_parser", slack_user_id=requesting_user_id, completion=completion)
        logger.debug("LLM response: %s", completion["content"])

        try:
            parsed = parse_json_response(completion["content"])
        except ValueError as exc:
            logger.error("Failed to parse LLM JSON response: %s", exc)
            return ParseFailure(MALFORMED_RESPONSE_MESSAGE)

        raw_entries = [e for e in (parsed.get("entries") or []) if isinstance(e, dict)]
        if parsed.get("error") and not raw_entries:
            return ParseFailure(str(parsed["error"]))

        for entry in raw_entries:
            if not entry.get("user_id"):
                entry["user_id"] = requesting_user_id

        bot_user_id = await users.get_bot_user_id()

        unknown = await _find_unknown_users(
            raw_entries,
            parsed.get("unknown_user_mentions") or [],
            users=users,
            bot_user_id=bot_user_id,
        )
        if unknown:
            return UnknownUsers(unknown)

        raw_entries = [e for e in raw_entries if e.get("user_id") != bot_user_id and _entry_minutes(e) > 0]
        if not raw_entries:
            return ParseFailure(NO_ENTRIES_MESSAGE)

        suggested = parsed.get("suggested_project_name") or None
        needs_clarification = bool(parsed.get("needs_clarification")) or any(
            _entry_confidence(e) < CONFIDENCE_THRESHOLD or not str(e.get("project") or "").strip()
            for e in raw_entries
        )
        if needs_clarification:
            return NeedsProjectSelection(
                entries=[
                    PendingEntry(
                        user_id=str(e["user_id"]),
                        minutes=_entry_minutes(e),
                        date=_entry_date(e, now.date()).isoformat(),
                        notes=e.get("notes"),
                    )
                    for e in raw_entries
                ],
                suggested_project_name=str(suggested) if suggested else None,
            )

        drafts = [
            TimeEntryDraft(
                user_id=str(e["user_id"]),
                minutes=_entry_minutes(e),
                project=str(e.get("project") or "").strip(),
                entry_date=_entry_date(e, now.date()),
                notes=e.get("notes"),
            )
            for e in raw_entries
        ]
        logger.debug("Parsed %d entries", len(drafts))
        return ParsedEntries(drafts)

    except OpenAIError as exc:
        logger.error("LLM error: %s", exc)
        return ParseFailure(LLM_UNAVAILABLE_MESSAGE)
    except Exception as exc:  # noqa: BLE001
        logger.error("Parse error: %s - %s", type(exc).__name__, exc, exc_info=True)
        return ParseFailure(GENERIC_FAILURE_MESSAGE)

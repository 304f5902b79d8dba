from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Protocol

from supabase import Client

from ..config import settings
from .database import is_unique_violation, response_rows, utc_now_iso

logger = logging.getLogger(__name__)


class SlackDirectoryProtocol(Protocol):
    async def get_user_info(self, user_id: str) -> Optional[dict[str, Any]]: ...
    async def auth_test(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class SlackUser:
    id: int
    slack_user_id: str
    slack_username: Optional[str]
    timezone: str
    is_bot: bool = False
    updated_at: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.slack_username or self.slack_user_id


def _coerce_user(row: dict[str, Any], default_timezone: str) -> SlackUser:
    return SlackUser(
        id=int(row["id"]),
        slack_user_id=str(row.get("slack_user_id") or ""),
        slack_username=str(row["slack_username"]) if row.get("slack_username") else None,
        timezone=str(row.get("timezone") or default_timezone),
        is_bot=bool(row.get("is_bot")),
        updated_at=str(row["updated_at"]) if row.get("updated_at") else None,
    )


def _username_from_info(info: dict[str, Any]) -> Optional[str]:
    profile = info.get("profile") if isinstance(info.get("profile"), dict) else {}
    name = profile.get("display_name") or info.get("name")
    return str(name) if name else None


# Process-wide; the bot identity never changes for a given token.
_bot_user_id: str | None = None


class UserService:
    """Slack users mirrored into ``users``, refreshed lazily from ``users.info``."""

    def __init__(
        self,
        supabase_client: Client,
        slack: SlackDirectoryProtocol,
        *,
        default_timezone: str | None = None,
        refresh_interval: timedelta | None = None,
    ) -> None:
        self.db = supabase_client
        self.slack = slack
        self.default_timezone = default_timezone or settings.default_timezone
        self.refresh_interval = refresh_interval or timedelta(hours=settings.user_refresh_interval_hours)

    def _get_row(self, slack_user_id: str) -> Optional[dict[str, Any]]:
        response = (
            self.db.table("users")
            .select("*")
            .eq("slack_user_id", slack_user_id)
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        return rows[0] if rows else None

    def _insert_row(self, row: dict[str, Any]) -> Optional[dict[str, Any]]:
        try:
            rows = response_rows(self.db.table("users").insert(row).execute())
        except Exception as exc:
            if is_unique_violation(exc):
                return self._get_row(row["slack_user_id"])
            raise
        return rows[0] if rows else None

    def _update_row(self, user_id: int, updates: dict[str, Any]) -> None:
        self.db.table("users").update(updates).eq("id", user_id).execute()

    def _is_stale(self, user: SlackUser) -> bool:
        if not user.updated_at:
            return True
        try:
            updated = datetime.fromisoformat(user.updated_at.replace("Z", "+00:00"))
        except ValueError:
            return True
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - updated > self.refresh_interval

    async def find_or_create(self, slack_user_id: str) -> SlackUser:
        slack_user_id = (slack_user_id or "").strip()
        if not slack_user_id:
            raise ValueError("Missing slack_user_id")

        row = await asyncio.to_thread(self._get_row, slack_user_id)
        if row:
            user = _coerce_user(row, self.default_timezone)
            if self._is_stale(user):
                return await self._refresh(user)
            return user

        info = await self.slack.get_user_info(slack_user_id)
        now = utc_now_iso()
        new_row: dict[str, Any] = {
            "slack_user_id": slack_user_id,
            "slack_username": _username_from_info(info) if info else None,
            "timezone": (info or {}).get("tz") or self.default_timezone,
            "is_bot": bool((info or {}).get("is_bot")),
            "created_at": now,
            "updated_at": now,
        }
        created = await asyncio.to_thread(self._insert_row, new_row)
        if not created:
            raise RuntimeError(f"Failed to create user {slack_user_id}")
        return _coerce_user(created, self.default_timezone)

    async def _refresh(self, user: SlackUser) -> SlackUser:
        try:
            info = await self.slack.get_user_info(user.slack_user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to refresh user %s: %s", user.slack_user_id, exc)
            return user
        if not info:
            return user

        updates: dict[str, Any] = {"updated_at": utc_now_iso()}
        new_tz = info.get("tz")
        if new_tz and new_tz != user.timezone:
            updates["timezone"] = new_tz
            logger.debug("Updated timezone for %s to %s", user.slack_user_id, new_tz)
        new_name = _username_from_info(info)
        if new_name and new_name != user.slack_username:
            updates["slack_username"] = new_name

        await asyncio.to_thread(self._update_row, user.id, updates)
        return SlackUser(
            id=user.id,
            slack_user_id=user.slack_user_id,
            slack_username=updates.get("slack_username", user.slack_username),
            timezone=updates.get("timezone", user.timezone),
            is_bot=user.is_bot,
            updated_at=updates["updated_at"],
        )

    async def get_bot_user_id(self) -> Optional[str]:
        global _bot_user_id  # noqa: PLW0603
        if settings.slack_bot_user_id:
            return settings.slack_bot_user_id
        if _bot_user_id:
            return _bot_user_id
        try:
            data = await self.slack.auth_test()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get bot user ID: %s", exc)
            return None
        bot_id = str(data.get("user_id") or "").strip()
        if bot_id:
            _bot_user_id = bot_id
            logger.info("Bot user ID detected: %s", bot_id)
        return _bot_user_id

    async def is_valid_slack_user(self, slack_user_id: str) -> bool:
        """True for a live, human Slack account."""
        slack_user_id = (slack_user_id or "").strip()
        if not slack_user_id or slack_user_id[0] not in {"U", "W"}:
            return False

        row = await asyncio.to_thread(self._get_row, slack_user_id)
        if row and row.get("is_bot"):
            return False

        info = await self.slack.get_user_info(slack_user_id)
        if not info or info.get("deleted"):
            return False

        if info.get("is_bot"):
            now = utc_now_iso()
            if row:
                await asyncio.to_thread(self._update_row, int(row["id"]), {"is_bot": True, "updated_at": now})
            else:
                await asyncio.to_thread(
                    self._insert_row,
                    {
                        "slack_user_id": slack_user_id,
                        "slack_username": _username_from_info(info),
                        "timezone": info.get("tz") or self.default_timezone,
                        "is_bot": True,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
            return False

        return True

    def names_by_id(self, user_ids: Iterable[int]) -> dict[int, str]:
        """Display names for ``users.id`` values. Rows are read as stored, without a Slack refresh."""
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        response = self.db.table("users").select("*").in_("id", ids).execute()
        users = [_coerce_user(row, self.default_timezone) for row in response_rows(response)]
        return {user.id: user.display_name for user in users}

    def names_by_slack_id(self, slack_user_ids: Iterable[str]) -> dict[str, str]:
        ids = sorted({s for s in slack_user_ids if s})
        if not ids:
            return {}
        response = self.db.table("users").select("*").in_("slack_user_id", ids).execute()
        users = [_coerce_user(row, self.default_timezone) for row in response_rows(response)]
        return {user.slack_user_id: user.display_name for user in users}

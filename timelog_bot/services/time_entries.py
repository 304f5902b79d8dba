from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from supabase import Client

from .database import response_rows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeEntry:
    id: int
    user_id: int
    project_id: int
    minutes: int
    date: str
    notes: Optional[str]
    logged_by_slack_id: str
    event_log_id: Optional[int] = None

    @property
    def hours(self) -> float:
        return round(self.minutes / 60, 2)


def _coerce_entry(row: dict[str, Any]) -> TimeEntry:
    event_log_id = row.get("event_log_id")
    return TimeEntry(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        project_id=int(row["project_id"]),
        minutes=int(row.get("minutes") or 0),
        date=str(row.get("date") or ""),
        notes=row.get("notes"),
        logged_by_slack_id=str(row.get("logged_by_slack_id") or ""),
        event_log_id=int(event_log_id) if event_log_id is not None else None,
    )


class TimeEntryService:
    def __init__(self, supabase_client: Client) -> None:
        self.db = supabase_client

    def create(
        self,
        *,
        user_id: int,
        project_id: int,
        minutes: int,
        entry_date: date,
        notes: Optional[str],
        logged_by_slack_id: str,
        event_log_id: Optional[int] = None,
    ) -> TimeEntry:
        row = {
            "user_id": user_id,
            "project_id": project_id,
            "minutes": int(minutes),
            "date": entry_date.isoformat(),
            "notes": notes,
            "logged_by_slack_id": logged_by_slack_id,
            "event_log_id": event_log_id,
        }
        rows = response_rows(self.db.table("time_entries").insert(row).execute())
        if not rows:
            raise RuntimeError("Failed to create time entry")
        return _coerce_entry(rows[0])

    def count_for_event_log(self, event_log_id: int) -> int:
        response = (
            self.db.table("time_entries")
            .select("id", count="exact")
            .eq("event_log_id", event_log_id)
            .execute()
        )
        count = getattr(response, "count", None)
        if isinstance(count, int):
            return count
        return len(response_rows(response))

    def list_between(self, start: date, end: date, *, user_id: Optional[int] = None) -> list[TimeEntry]:
        """Entries dated ``start`` through ``end`` inclusive, newest first."""
        query = (
            self.db.table("time_entries")
            .select("*")
            .gte("date", start.isoformat())
            .lte("date", end.isoformat())
        )
        if user_id is not None:
            query = query.eq("user_id", user_id)
        response = query.order("date", desc=True).execute()
        return [_coerce_entry(row) for row in response_rows(response)]

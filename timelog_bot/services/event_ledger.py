"""Idempotent event ledger backed by ``event_logs``.

The unique constraint on ``event_logs.event_id`` is the only exclusivity
primitive in the ingestion path. Every write here is a single conditional
insert, upsert or delete; nothing checks for existence before inserting.

Row kinds sharing the table:
- processed-event marker: ``event_id`` is the Slack event id
- pending selection: ``event_id = "pending_<ts>"``, kind ``pending_project_selection``
- interaction audit: ``event_id = "interactive_<ts>"``, kind ``interactive_response``
- commit claim: ``event_id = "commit_<ts>"``, kind ``pending_selection_commit``

Synchronous (Supabase Python client is sync); wrap in ``asyncio.to_thread``
from async code.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from supabase import Client

from .database import is_unique_violation, response_rows, utc_now_iso

logger = logging.getLogger(__name__)

EVENT_LOGS_TABLE = "event_logs"

PENDING_PROJECT_SELECTION = "pending_project_selection"
INTERACTIVE_RESPONSE = "interactive_response"
PENDING_SELECTION_COMMIT = "pending_selection_commit"

_PENDING_PREFIX = "pending_"
_INTERACTIVE_PREFIX = "interactive_"
_COMMIT_PREFIX = "commit_"


class EventLedgerError(Exception):
    pass


class PendingSelectionDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class PendingEntry:
    user_id: str
    minutes: int
    date: str
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "minutes": self.minutes,
            "date": self.date,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class PendingSelection:
    entries: list[PendingEntry]
    suggested_project_name: Optional[str] = None
    original_message: Optional[str] = None
    # Row context, not part of the serialized blob.
    message_ts: Optional[str] = field(default=None, compare=False)
    channel_id: Optional[str] = field(default=None, compare=False)
    user_id: Optional[str] = field(default=None, compare=False)


def encode_pending_selection(pending: PendingSelection) -> str:
    return json.dumps(
        {
            "entries": [entry.to_dict() for entry in pending.entries],
            "suggested_project_name": pending.suggested_project_name,
            "original_message": pending.original_message,
        }
    )


def decode_pending_selection(blob: str | None) -> PendingSelection:
    if not blob:
        raise PendingSelectionDecodeError("Empty pending_data")
    try:
        data = json.loads(blob)
    except (TypeError, json.JSONDecodeError) as exc:
        raise PendingSelectionDecodeError(f"Invalid pending_data JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
        raise PendingSelectionDecodeError("pending_data must be an object with an entries list")

    entries: list[PendingEntry] = []
    for raw in data["entries"]:
        if not isinstance(raw, dict):
            raise PendingSelectionDecodeError("pending entry must be an object")
        user_id = str(raw.get("user_id") or "").strip()
        date_str = str(raw.get("date") or "").strip()
        try:
            minutes = int(raw.get("minutes"))
        except (TypeError, ValueError) as exc:
            raise PendingSelectionDecodeError(f"Invalid minutes: {raw.get('minutes')!r}") from exc
        if not user_id or not date_str:
            raise PendingSelectionDecodeError("pending entry missing user_id/date")
        try:
            date.fromisoformat(date_str)
        except ValueError as exc:
            raise PendingSelectionDecodeError(f"Invalid date: {date_str!r}") from exc
        notes = raw.get("notes")
        entries.append(
            PendingEntry(
                user_id=user_id,
                minutes=minutes,
                date=date_str,
                notes=str(notes) if notes is not None else None,
            )
        )

    suggested = data.get("suggested_project_name")
    original = data.get("original_message")
    return PendingSelection(
        entries=entries,
        suggested_project_name=str(suggested) if suggested else None,
        original_message=str(original) if original is not None else None,
    )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EventLedger:
    def __init__(self, db: Client, *, pending_ttl: timedelta | None = None) -> None:
        self.db = db
        self.pending_ttl = pending_ttl

    def _table(self):
        return self.db.table(EVENT_LOGS_TABLE)

    def record_if_new(
        self,
        event_id: str,
        event_type: str,
        original_message: Optional[str],
        *,
        message_ts: Optional[str] = None,
        channel_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a processed-event marker.

        Returns the new row id, or None if the event was already recorded.
        Concurrent deliveries of the same ``event_id`` race on the unique
        constraint; exactly one gets an id back.
        """
        row: dict[str, Any] = {
            "event_id": event_id,
            "event_type": event_type,
            "original_message": original_message,
            "message_ts": message_ts,
            "channel_id": channel_id,
            "user_id": user_id,
            "processed_at": utc_now_iso(),
        }
        try:
            response = self._table().upsert(row, on_conflict="event_id", ignore_duplicates=True).execute()
        except Exception as exc:
            if is_unique_violation(exc):
                logger.debug("Event %s already recorded by another worker", event_id)
                return None
            raise

        rows = response_rows(response)
        if not rows:
            return None
        return int(rows[0]["id"])

    def put_pending_selection(
        self,
        message_ts: str,
        channel_id: str,
        user_id: str,
        pending: PendingSelection,
        original_message: Optional[str],
    ) -> None:
        row = {
            "event_id": f"{_PENDING_PREFIX}{message_ts}",
            "event_type": PENDING_PROJECT_SELECTION,
            "message_ts": message_ts,
            "channel_id": channel_id,
            "user_id": user_id,
            "original_message": original_message,
            "pending_data": encode_pending_selection(pending),
            "processed_at": utc_now_iso(),
        }
        self._table().upsert(row, on_conflict="event_id").execute()
        logger.debug("Stored pending selection for message_ts: %s", message_ts)

    def get_pending_selection(self, message_ts: str) -> Optional[PendingSelection]:
        message_ts = (message_ts or "").strip()
        if not message_ts:
            return None

        response = (
            self._table()
            .select("*")
            .eq("message_ts", message_ts)
            .eq("event_type", PENDING_PROJECT_SELECTION)
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        if not rows:
            return None
        row = rows[0]

        if self.pending_ttl is not None:
            stored_at = _parse_timestamp(row.get("processed_at"))
            if stored_at and datetime.now(timezone.utc) - stored_at > self.pending_ttl:
                logger.info("Pending selection for %s expired; discarding", message_ts)
                self.clear_pending_selection(message_ts)
                return None

        try:
            decoded = decode_pending_selection(row.get("pending_data"))
        except PendingSelectionDecodeError as exc:
            logger.error("Failed to decode pending selection for %s: %s", message_ts, exc)
            return None

        return PendingSelection(
            entries=decoded.entries,
            suggested_project_name=decoded.suggested_project_name,
            original_message=decoded.original_message
            if decoded.original_message is not None
            else row.get("original_message"),
            message_ts=message_ts,
            channel_id=str(row.get("channel_id")) if row.get("channel_id") else None,
            user_id=str(row.get("user_id")) if row.get("user_id") else None,
        )

    def clear_pending_selection(self, message_ts: str) -> None:
        message_ts = (message_ts or "").strip()
        if not message_ts:
            return
        (
            self._table()
            .delete()
            .eq("message_ts", message_ts)
            .eq("event_type", PENDING_PROJECT_SELECTION)
            .execute()
        )
        logger.debug("Cleaned up pending selection for message_ts: %s", message_ts)

    def _find_by_event_id(self, event_id: str) -> Optional[int]:
        response = self._table().select("id").eq("event_id", event_id).limit(1).execute()
        rows = response_rows(response)
        return int(rows[0]["id"]) if rows else None

    def find_or_create_audit_record(self, message_ts: str, original_message: Optional[str]) -> int:
        """Return the ledger row that originated ``message_ts``, creating an audit row if none."""
        message_ts = (message_ts or "").strip()
        if not message_ts:
            raise EventLedgerError("find_or_create_audit_record requires message_ts")

        response = (
            self._table()
            .select("id")
            .eq("message_ts", message_ts)
            .neq("event_type", PENDING_PROJECT_SELECTION)
            .order("id")
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        if rows:
            return int(rows[0]["id"])

        audit_event_id = f"{_INTERACTIVE_PREFIX}{message_ts}"
        row = {
            "event_id": audit_event_id,
            "event_type": INTERACTIVE_RESPONSE,
            "message_ts": message_ts,
            "original_message": original_message,
            "processed_at": utc_now_iso(),
        }
        try:
            inserted = response_rows(self._table().insert(row).execute())
        except Exception as exc:
            if not is_unique_violation(exc):
                raise
            inserted = []

        if inserted:
            return int(inserted[0]["id"])

        winner = self._find_by_event_id(audit_event_id)
        if winner is None:
            raise EventLedgerError(f"Audit record for {message_ts} vanished after insert race")
        return winner

    def claim_commit(self, message_ts: str) -> bool:
        """Take the one-time right to commit the pending selection for ``message_ts``.

        Concurrent selections race on the ``event_id`` constraint of the
        ``commit_<ts>`` row; exactly one caller gets True.
        """
        message_ts = (message_ts or "").strip()
        if not message_ts:
            raise EventLedgerError("claim_commit requires message_ts")
        claim_id = self.record_if_new(f"{_COMMIT_PREFIX}{message_ts}", PENDING_SELECTION_COMMIT, None)
        return claim_id is not None

    def release_commit_claim(self, message_ts: str) -> None:
        """Drop the claim so the selection can be retried. Only valid when nothing was written."""
        message_ts = (message_ts or "").strip()
        if not message_ts:
            return
        self._table().delete().eq("event_id", f"{_COMMIT_PREFIX}{message_ts}").execute()
        logger.debug("Released commit claim for message_ts: %s", message_ts)

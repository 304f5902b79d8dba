from __future__ import annotations

import copy
import json
import logging
import threading
from functools import partial
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock

import pytest
from postgrest.exceptions import APIError

from timelog_bot.services import user_service as user_service_module
from timelog_bot.services.event_ledger import EventLedger
from timelog_bot.services.projects import ProjectService
from timelog_bot.services.time_entries import TimeEntryService
from timelog_bot.services.timelog.message_parser import parse_message
from timelog_bot.services.timelog.runtime_deps import TimelogRuntimeDeps
from timelog_bot.services.user_service import UserService


# ---------------------------------------------------------------------------
# In-memory stand-in for the supabase-py query builder.
# Enforces the same unique constraints as the migration.
# ---------------------------------------------------------------------------


def _lower_name(row: dict[str, Any]) -> Optional[str]:
    name = row.get("name")
    return str(name).lower() if name is not None else None


def _hours(row: dict[str, Any]) -> Optional[float]:
    minutes = row.get("minutes")
    return round(int(minutes) / 60, 2) if minutes is not None else None


# Stored generated columns from the migration, recomputed on every write.
_GENERATED: dict[str, dict[str, Callable[[dict[str, Any]], Any]]] = {
    "projects": {"name_key": _lower_name},
    "time_entries": {"hours": _hours},
}


_UNIQUE_KEYS: dict[str, dict[str, Callable[[dict[str, Any]], Any]]] = {
    "event_logs": {"event_id": lambda r: r.get("event_id")},
    "users": {"slack_user_id": lambda r: r.get("slack_user_id")},
    "projects": {"name_key": _lower_name},
}


class FakeResponse:
    def __init__(self, data: list[dict[str, Any]], count: Optional[int] = None) -> None:
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table_name = table
        self.op = "select"
        self.columns = "*"
        self.count: Optional[str] = None
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False
        self.filters: list[Callable[[dict[str, Any]], bool]] = []
        self.order_by: Optional[tuple[str, bool]] = None
        self.limit_n: Optional[int] = None

    def select(self, columns: str = "*", count: Optional[str] = None) -> "FakeQuery":
        self.op = "select"
        self.columns = columns
        self.count = count
        return self

    def insert(self, row: dict[str, Any]) -> "FakeQuery":
        self.op = "insert"
        self.payload = row
        return self

    def upsert(
        self, row: dict[str, Any], on_conflict: str = "", ignore_duplicates: bool = False
    ) -> "FakeQuery":
        self.op = "upsert"
        self.payload = row
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, values: dict[str, Any]) -> "FakeQuery":
        self.op = "update"
        self.payload = values
        return self

    def delete(self) -> "FakeQuery":
        self.op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def in_(self, column: str, values: list[Any]) -> "FakeQuery":
        allowed = list(values)
        self.filters.append(lambda r: r.get(column) in allowed)
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) >= value)
        return self

    def lte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) <= value)
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self.limit_n = n
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        return all(f(row) for f in self.filters)

    def _project(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.columns.strip() == "*":
            return copy.deepcopy(row)
        cols = [c.strip() for c in self.columns.split(",") if c.strip()]
        return {c: copy.deepcopy(row.get(c)) for c in cols}

    def execute(self) -> FakeResponse:
        with self.db.lock:
            return getattr(self, f"_exec_{self.op}")()

    def _exec_select(self) -> FakeResponse:
        rows = [r for r in self.db.rows(self.table_name) if self._matches(r)]
        if self.order_by:
            column, desc = self.order_by
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        total = len(rows)
        if self.limit_n is not None:
            rows = rows[: self.limit_n]
        return FakeResponse([self._project(r) for r in rows], count=total if self.count else None)

    def _exec_insert(self) -> FakeResponse:
        conflict = self.db.find_conflict(self.table_name, self.payload)
        if conflict is not None:
            raise APIError(
                {
                    "code": "23505",
                    "message": f"duplicate key value violates unique constraint on {self.table_name}",
                    "details": None,
                    "hint": None,
                }
            )
        return FakeResponse([copy.deepcopy(self.db.add_row(self.table_name, self.payload))])

    def _exec_upsert(self) -> FakeResponse:
        existing = self.db.find_conflict(self.table_name, self.payload)
        if existing is None:
            return FakeResponse([copy.deepcopy(self.db.add_row(self.table_name, self.payload))])
        if self.ignore_duplicates:
            return FakeResponse([])
        existing.update(copy.deepcopy(self.payload))
        self.db.refresh_generated(self.table_name, existing)
        return FakeResponse([copy.deepcopy(existing)])

    def _exec_update(self) -> FakeResponse:
        updated = []
        for row in self.db.rows(self.table_name):
            if self._matches(row):
                row.update(copy.deepcopy(self.payload))
                self.db.refresh_generated(self.table_name, row)
                updated.append(copy.deepcopy(row))
        return FakeResponse(updated)

    def _exec_delete(self) -> FakeResponse:
        table = self.db.rows(self.table_name)
        deleted = [r for r in table if self._matches(r)]
        self.db.tables[self.table_name] = [r for r in table if not self._matches(r)]
        if self.table_name == "event_logs":
            gone = {r["id"] for r in deleted}
            for entry in self.db.rows("time_entries"):
                if entry.get("event_log_id") in gone:
                    entry["event_log_id"] = None
        return FakeResponse(deleted)


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self._ids: dict[str, int] = {}
        self.lock = threading.RLock()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def add_row(self, name: str, row: dict[str, Any]) -> dict[str, Any]:
        self._ids[name] = self._ids.get(name, 0) + 1
        stored = {**copy.deepcopy(row), "id": self._ids[name]}
        self.refresh_generated(name, stored)
        self.rows(name).append(stored)
        return stored

    def refresh_generated(self, name: str, row: dict[str, Any]) -> None:
        for column, compute in _GENERATED.get(name, {}).items():
            row[column] = compute(row)

    def find_conflict(self, name: str, row: dict[str, Any]) -> Optional[dict[str, Any]]:
        for key_fn in _UNIQUE_KEYS.get(name, {}).values():
            key = key_fn(row)
            if key is None:
                continue
            for existing in self.rows(name):
                if key_fn(existing) == key:
                    return existing
        return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

SLACK_DIRECTORY: dict[str, dict[str, Any]] = {
    "U1": {"id": "U1", "name": "carol", "tz": "America/Los_Angeles", "profile": {"display_name": "Carol"}},
    "U123": {"id": "U123", "name": "alice", "tz": "America/New_York", "profile": {"display_name": "Alice"}},
    "U456": {"id": "U456", "name": "bob", "tz": "Europe/London", "profile": {"display_name": "Bob"}},
    "UBOT": {"id": "UBOT", "name": "timelog", "is_bot": True},
    "UGONE": {"id": "UGONE", "name": "former", "deleted": True},
}


@pytest.fixture(autouse=True)
def _reset_bot_user_cache(monkeypatch):
    monkeypatch.setattr(user_service_module, "_bot_user_id", None)
    monkeypatch.setattr(user_service_module.settings, "slack_bot_user_id", None)


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def mock_slack_service():
    service = AsyncMock()

    async def _user_info(user_id: str):
        info = SLACK_DIRECTORY.get(user_id)
        return dict(info) if info else None

    service.get_user_info.side_effect = _user_info
    service.auth_test.return_value = {"ok": True, "user_id": "UBOT"}
    return service


def completion_returning(payload: dict[str, Any]) -> AsyncMock:
    """An async ``complete_fn`` that always answers with ``payload`` as JSON."""
    return AsyncMock(
        return_value={
            "content": json.dumps(payload),
            "tokens_in": 10,
            "tokens_out": 5,
            "tokens_total": 15,
            "model": "gpt-4o-mini",
            "duration_ms": 1,
        }
    )


@pytest.fixture
def llm_reply() -> dict[str, Any]:
    """Mutable model answer; tests overwrite keys before dispatching."""
    return {
        "entries": [
            {
                "user_id": "U1",
                "minutes": 120,
                "project": "Alpha",
                "project_confidence": 95,
                "date": "2024-01-15",
                "notes": None,
            }
        ],
        "needs_clarification": False,
        "suggested_project_name": None,
        "unknown_user_mentions": [],
        "error": None,
    }


@pytest.fixture
def make_deps(fake_db, mock_slack_service, llm_reply):
    def _make(**overrides: Any) -> TimelogRuntimeDeps:
        complete = overrides.pop("complete_fn", None) or AsyncMock(
            side_effect=lambda messages: completion_returning(llm_reply).return_value
        )
        values: dict[str, Any] = {
            "ledger": EventLedger(fake_db),
            "projects": ProjectService(fake_db),
            "time_entries": TimeEntryService(fake_db),
            "get_slack_service_fn": lambda: mock_slack_service,
            "user_service_factory": lambda slack: UserService(fake_db, slack, default_timezone="UTC"),
            "parse_message_fn": partial(parse_message, complete_fn=complete),
            "logger": logging.getLogger("tests.timelog"),
        }
        values.update(overrides)
        return TimelogRuntimeDeps(**values)

    return _make

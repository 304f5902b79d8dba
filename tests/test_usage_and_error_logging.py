from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from timelog_bot import error_logging
from timelog_bot.error_logging import AppErrorLogger, build_error_row
from timelog_bot.services import ai_token_usage_logger
from timelog_bot.services.ai_token_usage_logger import build_usage_row, log_ai_token_usage
from timelog_bot.services.database import DatabaseConfigurationError


def test_error_row_folds_unknown_keys_into_meta():
    row = build_error_row(
        {
            "message": "boom",
            "route": "slack.events",
            "event_id": "Ev1",
            "channel_id": None,
            "interaction_type": "block_actions",
            "meta": {"attempt": 2},
        }
    )

    assert row["message"] == "boom"
    assert row["event_id"] == "Ev1"
    assert "channel_id" not in row
    assert row["meta"] == {"attempt": 2, "interaction_type": "block_actions"}
    assert row["tool"] == "timelog_bot"
    assert row["occurred_at"]


def test_error_logger_is_silent_when_disabled(monkeypatch):
    monkeypatch.setattr(error_logging.settings, "usage_logging_enabled", False)
    factory = MagicMock()
    AppErrorLogger(client_factory=factory).log({"message": "boom"})
    factory.assert_not_called()


def test_error_logger_inserts_into_fake_db(monkeypatch, fake_db):
    monkeypatch.setattr(error_logging.settings, "usage_logging_enabled", True)
    AppErrorLogger(client_factory=lambda: fake_db).log({"message": "boom", "route": "slack.interactions"})

    [row] = fake_db.rows("app_error_events")
    assert row["route"] == "slack.interactions"


def test_error_logger_survives_missing_credentials(monkeypatch):
    monkeypatch.setattr(error_logging.settings, "usage_logging_enabled", True)

    def unconfigured():
        raise DatabaseConfigurationError("no creds")

    AppErrorLogger(client_factory=unconfigured).log({"message": "boom"})


def test_usage_row_maps_completion_fields():
    row = build_usage_row(
        tool="timelog_parser",
        slack_user_id="U1",
        completion={"tokens_in": 10, "tokens_out": 5, "tokens_total": 15, "model": "gpt-4o-mini", "content": "{}"},
    )
    assert row == {
        "tool": "timelog_parser",
        "slack_user_id": "U1",
        "prompt_tokens": 10,
        "completion_tokens": 5,
        "total_tokens": 15,
        "model": "gpt-4o-mini",
    }


@pytest.mark.asyncio
async def test_usage_is_written_when_enabled(monkeypatch, fake_db):
    monkeypatch.setattr(ai_token_usage_logger.settings, "usage_logging_enabled", True)
    with patch.object(ai_token_usage_logger, "get_supabase_admin_client", return_value=fake_db):
        await log_ai_token_usage(tool="timelog_parser", slack_user_id="U1", completion={"tokens_total": 7})

    [row] = fake_db.rows("ai_token_usage")
    assert row["total_tokens"] == 7


@pytest.mark.asyncio
async def test_usage_without_user_is_skipped(monkeypatch):
    monkeypatch.setattr(ai_token_usage_logger.settings, "usage_logging_enabled", True)
    with patch.object(ai_token_usage_logger, "get_supabase_admin_client") as mock_client:
        await log_ai_token_usage(tool="timelog_parser", slack_user_id=None, completion={})
    mock_client.assert_not_called()


@pytest.mark.asyncio
async def test_usage_insert_failure_is_swallowed(monkeypatch):
    monkeypatch.setattr(ai_token_usage_logger.settings, "usage_logging_enabled", True)
    with patch.object(ai_token_usage_logger, "get_supabase_admin_client", side_effect=RuntimeError("down")):
        await log_ai_token_usage(tool="timelog_parser", slack_user_id="U1", completion={})

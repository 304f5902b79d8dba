from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from timelog_bot.services import user_service as user_service_module
from timelog_bot.services.slack import SlackAPIError
from timelog_bot.services.user_service import UserService


def _service(fake_db, slack, **kwargs) -> UserService:
    return UserService(fake_db, slack, default_timezone="America/Los_Angeles", **kwargs)


@pytest.mark.asyncio
async def test_first_reference_creates_user_from_slack(fake_db, mock_slack_service):
    user = await _service(fake_db, mock_slack_service).find_or_create("U123")

    assert user.slack_user_id == "U123"
    assert user.timezone == "America/New_York"
    assert user.display_name == "Alice"
    assert len(fake_db.rows("users")) == 1


@pytest.mark.asyncio
async def test_unknown_to_slack_falls_back_to_default_timezone(fake_db, mock_slack_service):
    user = await _service(fake_db, mock_slack_service).find_or_create("U777")

    assert user.timezone == "America/Los_Angeles"
    assert user.display_name == "U777"


@pytest.mark.asyncio
async def test_fresh_user_is_not_refreshed(fake_db, mock_slack_service):
    service = _service(fake_db, mock_slack_service)
    await service.find_or_create("U123")
    mock_slack_service.get_user_info.reset_mock()

    await service.find_or_create("U123")

    mock_slack_service.get_user_info.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_user_picks_up_new_timezone(fake_db, mock_slack_service):
    stale = (datetime.now(timezone.utc) - timedelta(hours=30)).isoformat()
    fake_db.add_row(
        "users",
        {"slack_user_id": "U123", "slack_username": "Alice", "timezone": "UTC", "is_bot": False, "updated_at": stale},
    )

    user = await _service(fake_db, mock_slack_service).find_or_create("U123")

    assert user.timezone == "America/New_York"
    row = fake_db.rows("users")[0]
    assert row["timezone"] == "America/New_York"
    assert row["updated_at"] != stale


@pytest.mark.asyncio
async def test_refresh_failure_keeps_cached_user(fake_db, mock_slack_service):
    stale = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()
    fake_db.add_row("users", {"slack_user_id": "U123", "timezone": "UTC", "updated_at": stale})
    mock_slack_service.get_user_info.side_effect = SlackAPIError("down")

    user = await _service(fake_db, mock_slack_service).find_or_create("U123")

    assert user.timezone == "UTC"


@pytest.mark.asyncio
async def test_lost_insert_race_returns_winner(fake_db, mock_slack_service):
    service = _service(fake_db, mock_slack_service)
    winner = fake_db.add_row("users", {"slack_user_id": "U123", "timezone": "Asia/Tokyo"})

    row = service._insert_row({"slack_user_id": "U123", "timezone": "UTC"})

    assert row["id"] == winner["id"]
    assert len(fake_db.rows("users")) == 1


@pytest.mark.asyncio
async def test_bot_user_id_is_resolved_once(fake_db, mock_slack_service):
    service = _service(fake_db, mock_slack_service)

    assert await service.get_bot_user_id() == "UBOT"
    assert await service.get_bot_user_id() == "UBOT"

    mock_slack_service.auth_test.assert_awaited_once()


@pytest.mark.asyncio
async def test_configured_bot_user_id_skips_auth_test(fake_db, mock_slack_service, monkeypatch):
    monkeypatch.setattr(user_service_module.settings, "slack_bot_user_id", "UCONFIGURED")

    assert await _service(fake_db, mock_slack_service).get_bot_user_id() == "UCONFIGURED"
    mock_slack_service.auth_test.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "slack_user_id, expected",
    [
        ("U123", True),
        ("U456", True),
        ("C123", False),
        ("", False),
        ("UGONE", False),
        ("U404", False),
        ("UBOT", False),
    ],
)
async def test_is_valid_slack_user(fake_db, mock_slack_service, slack_user_id, expected):
    assert await _service(fake_db, mock_slack_service).is_valid_slack_user(slack_user_id) is expected


@pytest.mark.asyncio
async def test_bot_accounts_are_remembered(fake_db, mock_slack_service):
    service = _service(fake_db, mock_slack_service)
    assert not await service.is_valid_slack_user("UBOT")
    mock_slack_service.get_user_info.reset_mock()

    assert not await service.is_valid_slack_user("UBOT")

    assert fake_db.rows("users")[0]["is_bot"] is True
    mock_slack_service.get_user_info.assert_not_awaited()

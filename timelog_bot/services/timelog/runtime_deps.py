"""Typed dependency container for the event and interaction handlers."""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import Any, Awaitable, Callable, Protocol

from ..event_ledger import EventLedger
from ..projects import ProjectService
from ..time_entries import TimeEntryService
from ..user_service import UserService


class SlackClientProtocol(Protocol):
    async def post_ephemeral(self, *, channel: str, user: str, text: str, blocks: list[dict[str, Any]] | None = None) -> Any: ...
    async def add_reaction(self, *, channel: str, timestamp: str, name: str = ...) -> Any: ...
    async def open_modal(self, *, trigger_id: str, view: dict[str, Any]) -> Any: ...
    async def get_user_info(self, user_id: str) -> dict[str, Any] | None: ...
    async def auth_test(self) -> dict[str, Any]: ...
    async def post_to_response_url(self, response_url: str, payload: dict[str, Any]) -> Any: ...
    async def aclose(self) -> Any: ...


@dataclass(frozen=True)
class TimelogRuntimeDeps:
    ledger: EventLedger
    projects: ProjectService
    time_entries: TimeEntryService
    get_slack_service_fn: Callable[[], SlackClientProtocol]
    user_service_factory: Callable[[SlackClientProtocol], UserService]
    parse_message_fn: Callable[..., Awaitable[Any]]
    logger: Logger

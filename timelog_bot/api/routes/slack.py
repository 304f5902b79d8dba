import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from ...config import settings
from ...services.database import DatabaseConfigurationError, get_supabase_admin_client
from ...services.event_ledger import EventLedger
from ...services.projects import ProjectService
from ...services.slack import get_slack_service, get_slack_signing_secret, verify_slack_signature
from ...services.time_entries import TimeEntryService
from ...services.timelog import (
    SlackCommandKind,
    TimelogRuntimeDeps,
    handle_command,
    handle_event,
    handle_interaction,
)
from ...services.timelog.command_handler import PROCESSING_MESSAGE, classify_command, ephemeral
from ...services.timelog.message_parser import parse_message
from ...services.user_service import UserService

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])


def _get_runtime_deps() -> TimelogRuntimeDeps:
    db = get_supabase_admin_client()
    return TimelogRuntimeDeps(
        ledger=EventLedger(db, pending_ttl=timedelta(hours=settings.pending_selection_ttl_hours)),
        projects=ProjectService(db),
        time_entries=TimeEntryService(db),
        get_slack_service_fn=get_slack_service,
        user_service_factory=lambda slack: UserService(db, slack),
        parse_message_fn=parse_message,
        logger=_logger,
    )


def _runtime_deps_or_none() -> TimelogRuntimeDeps | None:
    try:
        return _get_runtime_deps()
    except DatabaseConfigurationError as exc:
        _logger.error("Dropping Slack payload, storage is not configured: %s", exc)
        return None


async def _process_event(envelope: dict[str, Any]) -> None:
    deps = _runtime_deps_or_none()
    if deps is not None:
        await handle_event(envelope, deps=deps)


async def _process_interaction(interaction: dict[str, Any]) -> dict[str, Any] | None:
    deps = _runtime_deps_or_none()
    if deps is None:
        return None
    return await handle_interaction(interaction, deps=deps)


async def _process_command(form: dict[str, str]) -> dict[str, Any] | None:
    deps = _runtime_deps_or_none()
    if deps is None:
        return None
    return await handle_command(form, deps=deps)


def _json_object_or_400(raw: str | bytes, *, what: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{what} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail=f"{what} must be a JSON object")
    return value


def _require_slack_signature(request: Request, body: bytes) -> None:
    secret = get_slack_signing_secret().strip()
    if not secret:
        raise HTTPException(status_code=500, detail="SLACK_SIGNING_SECRET not set")

    if not verify_slack_signature(
        secret,
        request.headers.get("X-Slack-Request-Timestamp", ""),
        body,
        request.headers.get("X-Slack-Signature", ""),
    ):
        raise HTTPException(status_code=401, detail="Slack signature check failed")


def _interaction_from_form(body: bytes) -> dict[str, Any]:
    try:
        fields = parse_qs(body.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Interaction body is not UTF-8") from exc

    raw = next(iter(fields.get("payload") or []), "")
    if not raw:
        raise HTTPException(status_code=400, detail="Interaction body has no payload field")
    return _json_object_or_400(raw, what="Interaction payload")


def _command_from_form(body: bytes) -> dict[str, str]:
    try:
        fields = parse_qs(body.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Command body is not UTF-8") from exc
    return {key: values[0] for key, values in fields.items() if values}


async def _dispatch(
    background_tasks: BackgroundTasks,
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    **kwargs: Any,
) -> None:
    if settings.event_processing_mode == "inline":
        await fn(*args, **kwargs)
    else:
        background_tasks.add_task(fn, *args, **kwargs)


@router.post("/events")
async def slack_events(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    _require_slack_signature(request, body)
    envelope = _json_object_or_400(body, what="Event body")
    envelope_type = envelope.get("type")

    if envelope_type == "url_verification":
        challenge = envelope.get("challenge")
        if not isinstance(challenge, str) or not challenge:
            raise HTTPException(status_code=400, detail="url_verification without a challenge")
        return PlainTextResponse(challenge)

    # Slack retries (X-Slack-Retry-Num) go through the ledger like any other
    # delivery; the event_id marker drops the duplicate.
    if envelope_type == "event_callback":
        await _dispatch(background_tasks, _process_event, envelope)
    else:
        _logger.debug("Ignoring Slack envelope type: %s", envelope_type)

    return JSONResponse({"ok": True})


@router.post("/interactions")
async def slack_interactions(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    _require_slack_signature(request, body)
    interaction = _interaction_from_form(body)

    if interaction.get("type") == "view_submission":
        result = await _process_interaction(interaction)
        if result:
            return JSONResponse(result)
        return Response(status_code=200)

    await _dispatch(background_tasks, _process_interaction, interaction)
    return Response(status_code=200)


@router.post("/commands")
async def slack_commands(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    _require_slack_signature(request, body)
    form = _command_from_form(body)

    if classify_command(form) is SlackCommandKind.UNHANDLED:
        return JSONResponse({"text": f"Unknown command: {form.get('command', '')}"})

    # with a response_url the listing is posted there; this request only acks
    if form.get("response_url", "").strip():
        await _dispatch(background_tasks, _process_command, form)
        return JSONResponse(ephemeral(PROCESSING_MESSAGE))

    result = await _process_command(form)
    if result:
        return JSONResponse(result)
    return Response(status_code=200)

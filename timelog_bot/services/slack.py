import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .reliability import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)

# Replay window for signed requests. Not configurable per request.
SIGNATURE_MAX_AGE_SECONDS = 60 * 5

_SLACK_API_BASE = "https://slack.com/api"
_RETRY_BACKOFF_S = 0.5


class SlackError(Exception):
    pass


class SlackConfigurationError(SlackError):
    pass


class SlackAuthError(SlackError):
    pass


class SlackAPIError(SlackError):
    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class SlackTransientError(SlackAPIError):
    """Network failure or 5xx; worth another attempt."""

    def __init__(self, message: str, *, error_code: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, error_code=error_code)
        self.retry_after = retry_after


class SlackRateLimitError(SlackTransientError):
    pass


def verify_slack_signature(
    signing_secret: str,
    timestamp: str | None,
    body: bytes,
    signature: str | None,
    *,
    now: float | None = None,
) -> bool:
    """
    Check the ``X-Slack-Signature`` header against the raw request body.

    The expected value is ``v0=`` followed by the hex HMAC-SHA256 of
    ``v0:{timestamp}:{body}`` keyed with the signing secret. Requests whose
    timestamp is more than ``SIGNATURE_MAX_AGE_SECONDS`` away from ``now`` are
    rejected whatever their signature.
    """
    secret = (signing_secret or "").strip()
    if not secret or not timestamp or not signature:
        return False

    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > SIGNATURE_MAX_AGE_SECONDS:
        return False

    signed = b"v0:%s:%s" % (timestamp.encode("utf-8"), body)
    expected = "v0=" + hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After", "")
    return float(value) if value.isdigit() else None


def _decode_slack_response(method: str, response: httpx.Response) -> dict[str, Any]:
    status = response.status_code
    if status == 401:
        raise SlackAuthError("Slack rejected the bot token (401). Check SLACK_BOT_TOKEN.")
    if status == 429:
        raise SlackRateLimitError(
            f"Slack rate limited {method}",
            error_code="ratelimited",
            retry_after=_retry_after(response),
        )
    if status >= 500:
        raise SlackTransientError(f"Slack {method} returned HTTP {status}")
    if not 200 <= status < 300:
        raise SlackAPIError(f"Slack {method} returned HTTP {status}: {response.text}")

    try:
        data = response.json()
    except json.JSONDecodeError as exc:
        raise SlackAPIError(f"Slack {method} returned invalid JSON: {exc}") from exc

    if not data.get("ok"):
        code = data.get("error") or "unknown_error"
        raise SlackAPIError(f"Slack {method} failed: {code}", error_code=code)
    return data


class SlackService:
    """Bot-token Web API client covering the calls the time log bot makes."""

    def __init__(self, bot_token: str, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.bot_token = (bot_token or "").strip()
        if not self.bot_token:
            raise SlackConfigurationError("SLACK_BOT_TOKEN not set")

        self._client = httpx.AsyncClient(
            base_url=_SLACK_API_BASE,
            headers={"Authorization": f"Bearer {self.bot_token}"},
            timeout=httpx.Timeout(10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        json_body: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        try:
            if json_body is None:
                response = await self._client.get(f"/{method}", params=params)
            else:
                response = await self._client.post(f"/{method}", json=json_body)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise SlackTransientError(f"Slack {method} request failed: {exc}") from exc
        return _decode_slack_response(method, response)

    async def _call(
        self,
        method: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            return await retry_with_backoff(
                lambda: self._send(method, json_body, params),
                retryable=(SlackTransientError,),
                base_backoff_s=_RETRY_BACKOFF_S,
                operation=f"slack.{method}",
            )
        except RetryExhaustedError as exc:
            raise exc.last_error from exc

    async def post_ephemeral(
        self,
        *,
        channel: str,
        user: str,
        text: str,
        blocks: Optional[list[dict[str, Any]]] = None,
    ) -> dict[str, Any]:
        if not (channel or "").strip() or not (user or "").strip():
            raise SlackAPIError("chat.postEphemeral needs both channel and user")

        payload: dict[str, Any] = {"channel": channel.strip(), "user": user.strip(), "text": text}
        if blocks:
            payload["blocks"] = blocks
        return await self._call("chat.postEphemeral", json_body=payload)

    async def add_reaction(self, *, channel: str, timestamp: str, name: str = "white_check_mark") -> None:
        try:
            await self._call(
                "reactions.add",
                json_body={"channel": channel, "timestamp": timestamp, "name": name},
            )
        except SlackAPIError as exc:
            if exc.error_code != "already_reacted":
                raise
            logger.debug("Message %s already carries :%s:", timestamp, name)

    async def open_modal(self, *, trigger_id: str, view: dict[str, Any]) -> dict[str, Any]:
        trigger_id = (trigger_id or "").strip()
        if not trigger_id:
            raise SlackAPIError("views.open needs a trigger_id")
        return await self._call("views.open", json_body={"trigger_id": trigger_id, "view": view})

    async def get_user_info(self, user_id: str) -> Optional[dict[str, Any]]:
        """Return the ``users.info`` user object, or None when Slack can't resolve it."""
        try:
            data = await self._call("users.info", params={"user": user_id})
        except SlackAuthError:
            raise
        except SlackAPIError as exc:
            logger.warning("users.info failed for %s: %s", user_id, exc)
            return None
        user = data.get("user")
        return user if isinstance(user, dict) else None

    async def auth_test(self) -> dict[str, Any]:
        return await self._call("auth.test", json_body={})

    async def _send_to_response_url(self, response_url: str, payload: dict[str, Any]) -> None:
        try:
            response = await self._client.post(response_url, json=payload)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise SlackTransientError(f"Slack response_url request failed: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise SlackRateLimitError(
                "Slack rate limited response_url",
                error_code="ratelimited",
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise SlackTransientError(f"Slack response_url returned HTTP {status}")
        if not 200 <= status < 300:
            raise SlackAPIError(f"Slack response_url returned HTTP {status}: {response.text}")

    async def post_to_response_url(self, response_url: str, payload: dict[str, Any]) -> None:
        """Deliver a delayed slash command reply. The URL answers plain ``ok``, not JSON."""
        response_url = (response_url or "").strip()
        parsed = urlparse(response_url)
        # the client carries the bot token, so only Slack hosts may receive it
        if parsed.scheme != "https" or not (parsed.hostname or "").endswith(".slack.com"):
            raise SlackAPIError(f"Refusing to post to non-Slack response_url: {response_url}")
        try:
            await retry_with_backoff(
                lambda: self._send_to_response_url(response_url, payload),
                retryable=(SlackTransientError,),
                base_backoff_s=_RETRY_BACKOFF_S,
                operation="slack.response_url",
            )
        except RetryExhaustedError as exc:
            raise exc.last_error from exc


def get_slack_signing_secret() -> str:
    return os.environ.get("SLACK_SIGNING_SECRET", "")


def get_slack_service() -> SlackService:
    return SlackService(bot_token=os.environ.get("SLACK_BOT_TOKEN", ""))

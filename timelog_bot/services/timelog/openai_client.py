"""Chat completions for the time-entry parser, over plain httpx.

Each model gets a few attempts: timeouts, 429s and 5xx responses are retried
with backoff (honouring ``Retry-After``). If the primary model still fails and
``OPENAI_MODEL_FALLBACK`` names a different model, that model is tried once
more before the error reaches the parser.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, TypedDict

import httpx

from ...config import settings
from ..reliability import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)

_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
_REQUEST_TIMEOUT_S = 30.0
_ERROR_BODY_LIMIT = 500


class OpenAIError(Exception):
    pass


class OpenAIConfigurationError(OpenAIError):
    pass


class OpenAITransientError(OpenAIError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class OpenAIRateLimitError(OpenAITransientError):
    pass


class ChatMessage(TypedDict):
    role: str  # system | user | assistant
    content: str


class ChatCompletionResult(TypedDict):
    content: str
    tokens_in: int
    tokens_out: int
    tokens_total: int
    model: str
    duration_ms: int


def _request_body(
    messages: list[ChatMessage],
    *,
    model: str,
    temperature: float,
    max_tokens: int | None,
) -> dict[str, Any]:
    # the parser prompt always asks for a single JSON object
    body: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "response_format": {"type": "json_object"},
    }
    if max_tokens is not None:
        body["max_tokens"] = max_tokens
    return body


def _check_status(response: httpx.Response) -> None:
    status = response.status_code
    if status == 200:
        return
    detail = response.text[:_ERROR_BODY_LIMIT]
    if status == 429:
        header = response.headers.get("Retry-After", "")
        raise OpenAIRateLimitError(
            f"OpenAI rate limited the request: {detail}",
            retry_after=float(header) if header.isdigit() else None,
        )
    if status >= 500:
        raise OpenAITransientError(f"OpenAI returned HTTP {status}: {detail}")
    raise OpenAIError(f"OpenAI returned HTTP {status}: {detail}")


def _completion_from_body(data: dict[str, Any], *, model: str, duration_ms: int) -> ChatCompletionResult:
    choices = data.get("choices") or []
    message = (choices[0].get("message") or {}) if choices else {}
    content = message.get("content")
    if not content:
        raise OpenAIError("OpenAI response carried no message content")

    usage = data.get("usage") or {}
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    return ChatCompletionResult(
        content=content,
        tokens_in=prompt,
        tokens_out=completion,
        tokens_total=int(usage.get("total_tokens") or prompt + completion),
        model=data.get("model") or model,
        duration_ms=duration_ms,
    )


async def _call_openai_http(
    messages: list[ChatMessage],
    *,
    model: str,
    temperature: float,
    max_tokens: int | None = None,
) -> ChatCompletionResult:
    if not settings.openai_api_key:
        raise OpenAIConfigurationError("OPENAI_API_KEY is not set")

    started = time.monotonic()
    async with httpx.AsyncClient(timeout=httpx.Timeout(_REQUEST_TIMEOUT_S)) as client:
        try:
            response = await client.post(
                _COMPLETIONS_URL,
                json=_request_body(messages, model=model, temperature=temperature, max_tokens=max_tokens),
                headers={"Authorization": f"Bearer {settings.openai_api_key}"},
            )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise OpenAITransientError(f"OpenAI request failed: {exc}") from exc

    _check_status(response)
    try:
        data = response.json()
    except json.JSONDecodeError as exc:
        raise OpenAIError(f"OpenAI returned a non-JSON body: {exc}") from exc
    return _completion_from_body(data, model=model, duration_ms=int((time.monotonic() - started) * 1000))


async def _complete_on(
    model: str,
    messages: list[ChatMessage],
    *,
    temperature: float,
    max_tokens: int | None,
) -> ChatCompletionResult:
    try:
        return await retry_with_backoff(
            lambda: _call_openai_http(messages, model=model, temperature=temperature, max_tokens=max_tokens),
            retryable=(OpenAITransientError,),
            operation=f"openai.{model}",
        )
    except RetryExhaustedError as exc:
        raise exc.last_error from exc


def _fallback_for(model: str | None) -> str | None:
    primary = settings.openai_model_primary
    if model and model != primary:
        return None
    fallback = settings.openai_model_fallback
    return fallback if fallback and fallback != primary else None


async def call_chat_completion(
    messages: list[ChatMessage],
    *,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    model: str | None = None,
) -> ChatCompletionResult:
    """Run one completion, switching to the fallback model if the primary keeps failing.

    An explicit ``model`` other than the primary is never swapped out.
    """
    chosen = model or settings.openai_model_primary
    fallback = _fallback_for(model)
    try:
        return await _complete_on(chosen, messages, temperature=temperature, max_tokens=max_tokens)
    except OpenAIConfigurationError:
        raise
    except OpenAIError as exc:
        if fallback is None:
            raise
        logger.warning("OpenAI model %s failed (%s); trying %s", chosen, exc, fallback)
    return await _complete_on(fallback, messages, temperature=temperature, max_tokens=max_tokens)


_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def parse_json_response(content: str) -> dict[str, Any]:
    """Decode the model's JSON object, tolerating a surrounding code fence."""
    text = content.strip()
    fenced = _CODE_FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"model output is not JSON: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ValueError(f"model output is a JSON {type(decoded).__name__}, expected an object")
    return decoded

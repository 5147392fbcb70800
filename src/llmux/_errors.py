"""Shared mapping of HTTP outcomes into the llmux error taxonomy.

Adapters and the transport attach retry metadata here so the transport retry
loop and the dispatcher's classifier stay free of substring matching.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx

from llmux._http import is_server_error
from llmux.errors import (
    APIError,
    RateLimitError,
    TransportError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

_MAX_BODY_CHARS = 500


def _snip(text: str) -> str:
    s = " ".join(text.split())
    if len(s) <= _MAX_BODY_CHARS:
        return s
    return s[:_MAX_BODY_CHARS] + "…"


def extract_retry_after_s(headers: Mapping[str, str] | None) -> float | None:
    """Return the ``Retry-After`` delay in seconds, when present and numeric."""
    if headers is None:
        return None
    raw: Any = headers.get("Retry-After")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_error_message(body: str) -> str | None:
    """Pull a human-readable message out of a provider error body.

    Handles the shapes used by the supported backends::

        {"error": "model 'x' not found"}                 # Ollama
        {"error": {"message": "...", "code": "..."}}     # OpenAI-compatible
        {"code": "...", "message": "..."}                # DashScope native
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    return None


def _auth_hint(provider: str, status_code: int) -> str | None:
    if status_code in {401, 403}:
        env_var = "DASHSCOPE_API_KEY" if provider == "dashscope" else "API key"
        return f"Check credentials/permissions (try setting {env_var})."
    return None


def error_from_response(
    status_code: int,
    body: str,
    *,
    headers: Mapping[str, str] | None = None,
    provider: str,
    phase: str,
    attempts: int | None = None,
) -> APIError:
    """Map a non-2xx HTTP answer into the taxonomy.

    - 5xx: ``TransportError`` (retried inside the adapter).
    - 429: ``RateLimitError`` (not retried in-adapter; retryable across providers).
    - other 4xx: ``APIError`` with ``retryable=False``.
    """
    detail = extract_error_message(body) or _snip(body) or "no response body"
    retry_after_s = extract_retry_after_s(headers)
    msg = f"{provider} {phase} failed (status={status_code}): {detail}"

    if is_server_error(status_code):
        return TransportError(
            msg,
            attempts=attempts,
            status_code=status_code,
            retry_after_s=retry_after_s,
            provider=provider,
            phase=phase,
        )
    if status_code == 429:
        return RateLimitError(
            msg,
            retryable=True,
            status_code=status_code,
            retry_after_s=retry_after_s,
            provider=provider,
            phase=phase,
            hint="The provider is throttling requests; retry later or fall back.",
        )
    return APIError(
        msg,
        retryable=False,
        status_code=status_code,
        provider=provider,
        phase=phase,
        hint=_auth_hint(provider, status_code),
    )


def wrap_transport_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    attempts: int | None = None,
) -> APIError:
    """Map an exception raised while talking to a provider into the taxonomy."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already classified; fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        return exc

    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TimeoutException)):
            return TransportError(
                f"{provider} {phase} timed out",
                attempts=attempts,
                provider=provider,
                phase=phase,
            )
        if isinstance(e, httpx.TransportError):
            return TransportError(
                f"{provider} {phase} network error: {e}",
                attempts=attempts,
                provider=provider,
                phase=phase,
            )

    return APIError(
        f"{provider} {phase} failed: {exc}",
        retryable=False,
        provider=provider,
        phase=phase,
    )

"""Minimal async retry with explicit error contracts.

Design goals:
- Small API surface
- Explicit state (attempt counters passed to callbacks)
- No brittle substring matching for retry decisions

This is the *transport* retry loop that runs inside a single adapter call.
Provider fallback is a separate concern owned by the dispatcher.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

import httpx

from llmux.errors import TransportError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


def compute_backoff_delay(
    retry_index: int, *, base_delay_s: float, max_delay_s: float | None = None
) -> float:
    """Return the sleep before retry number *retry_index* (1-based).

    ``delay = base_delay_s * 2 ** (retry_index - 1)``, capped at *max_delay_s*.
    """
    if base_delay_s <= 0:
        return 0.0
    delay = base_delay_s * (2 ** max(0, retry_index - 1))
    if max_delay_s is not None:
        delay = min(delay, max_delay_s)
    return delay


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TimeoutException, httpx.TransportError)):
            return True
    return False


def should_retry_transport(exc: BaseException) -> bool:
    """Return True when an attempt failure should be retried on the same provider.

    Contract:
    - Cancellation is never retried.
    - TransportError (network, timeout, 5xx) is retried.
    - Raw httpx transport failures and timeouts are retried as a pragmatic fallback.
    - Everything else (4xx, malformed bodies, validation) surfaces immediately.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, TransportError):
        return exc.retryable is not False
    return _is_transient_network_error(exc)


async def retry_async(
    factory: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_s: float,
    max_delay_s: float | None = None,
    should_retry: Callable[[BaseException], bool] = should_retry_transport,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Run ``factory(attempt)`` with bounded retries.

    *factory* receives the 1-based attempt number. The last exception is
    re-raised once attempts run out or *should_retry* declines it.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exc: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            delay = compute_backoff_delay(
                attempt - 1, base_delay_s=base_delay_s, max_delay_s=max_delay_s
            )
            if last_exc is not None and on_retry is not None:
                on_retry(attempt, delay, last_exc)
            if delay > 0:
                await asyncio.sleep(delay)
        try:
            return await factory(attempt)
        except Exception as exc:
            last_exc = exc
            if not should_retry(exc) or attempt >= max_attempts:
                raise

    # Unreachable: the loop always returns or raises.
    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise last_exc

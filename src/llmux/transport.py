"""Shared HTTP transport: timeouts, connection settings, and transport retry.

Every adapter performs its outbound calls through an ``HttpTransport``. The
transport retries network failures, timeouts, and 5xx responses with
exponential backoff; everything else is mapped into the error taxonomy and
surfaced on the first attempt.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
import json
import logging
import time
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import httpx

from llmux._errors import error_from_response, wrap_transport_error
from llmux._version import __version__
from llmux.errors import ConfigurationError, SerializationError, TransportError
from llmux.retry import compute_backoff_delay, retry_async

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable, Mapping

log = logging.getLogger(__name__)

_DEFAULT_USER_AGENT = f"llmux/{__version__}"


@dataclass(frozen=True)
class TransportConfig:
    """Timeout, connection, and retry parameters for outbound provider calls.

    Every ``with_*`` method returns a new instance; omitted fields keep their
    defaults.

    Example:
        config = TransportConfig().with_max_attempts(5).with_base_delay(0.5)
    """

    request_timeout_s: float = 30.0
    connect_timeout_s: float = 10.0
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    user_agent: str = _DEFAULT_USER_AGENT
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                f"request_timeout_s must be > 0, got {self.request_timeout_s}"
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                f"connect_timeout_s must be > 0, got {self.connect_timeout_s}"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be >= 1, got {self.max_attempts}",
                hint="max_attempts counts the first try; use 1 to disable retries.",
            )
        if self.base_delay_s < 0:
            raise ConfigurationError(
                f"base_delay_s must be >= 0, got {self.base_delay_s}"
            )
        if self.max_delay_s < self.base_delay_s:
            raise ConfigurationError(
                "max_delay_s must be >= base_delay_s",
                hint=f"Got base_delay_s={self.base_delay_s}, max_delay_s={self.max_delay_s}.",
            )
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def with_request_timeout(self, seconds: float) -> TransportConfig:
        return replace(self, request_timeout_s=seconds)

    def with_connect_timeout(self, seconds: float) -> TransportConfig:
        return replace(self, connect_timeout_s=seconds)

    def with_max_attempts(self, attempts: int) -> TransportConfig:
        return replace(self, max_attempts=attempts)

    def with_base_delay(self, seconds: float) -> TransportConfig:
        return replace(
            self, base_delay_s=seconds, max_delay_s=max(seconds, self.max_delay_s)
        )

    def with_max_delay(self, seconds: float) -> TransportConfig:
        return replace(self, max_delay_s=seconds)

    def with_user_agent(self, user_agent: str) -> TransportConfig:
        return replace(self, user_agent=user_agent)

    def with_header(self, name: str, value: str) -> TransportConfig:
        return replace(self, headers={**self.headers, name: value})

    def backoff_delay(self, retry_index: int) -> float:
        """Return the sleep before retry number *retry_index* (1-based)."""
        return compute_backoff_delay(
            retry_index, base_delay_s=self.base_delay_s, max_delay_s=self.max_delay_s
        )

    def httpx_timeout(self, request_timeout_s: float | None = None) -> httpx.Timeout:
        return httpx.Timeout(
            request_timeout_s or self.request_timeout_s,
            connect=self.connect_timeout_s,
        )


@dataclass(frozen=True)
class ClientMetrics:
    """Request counters for one transport, as of the moment they were read.

    Each ``post_json``/``get_json`` call or stream opening counts once, however
    many attempts it took. Response times cover successful requests only and
    span all of their attempts; they stay at 0 until the first success.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retry_count: int = 0
    avg_response_time_ms: float = 0.0
    max_response_time_ms: float = 0.0
    min_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float | None:
        if self.total_requests == 0:
            return None
        return self.successful_requests / self.total_requests

    def with_success(self, elapsed_ms: float) -> ClientMetrics:
        count = self.successful_requests + 1
        if count == 1:
            low = high = avg = elapsed_ms
        else:
            low = min(self.min_response_time_ms, elapsed_ms)
            high = max(self.max_response_time_ms, elapsed_ms)
            avg = (self.avg_response_time_ms * (count - 1) + elapsed_ms) / count
        return replace(
            self,
            total_requests=self.total_requests + 1,
            successful_requests=count,
            avg_response_time_ms=avg,
            max_response_time_ms=high,
            min_response_time_ms=low,
        )

    def with_failure(self) -> ClientMetrics:
        return replace(
            self,
            total_requests=self.total_requests + 1,
            failed_requests=self.failed_requests + 1,
        )

    def with_retry(self) -> ClientMetrics:
        return replace(self, retry_count=self.retry_count + 1)


class HttpTransport:
    """Retrying JSON-over-HTTP transport owned by a single adapter."""

    def __init__(
        self,
        config: TransportConfig | None = None,
        *,
        provider: str,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize; *client* is injected in tests, otherwise created lazily."""
        self.config = config or TransportConfig()
        self.provider = provider
        self._headers = {
            "User-Agent": self.config.user_agent,
            **self.config.headers,
            **(headers or {}),
        }
        self._client = client
        self._owns_client = client is None
        self._metrics = ClientMetrics()

    @property
    def metrics(self) -> ClientMetrics:
        """Return a snapshot of this transport's request counters."""
        return self._metrics

    def _record_success(self, started: float) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._metrics = self._metrics.with_success(elapsed_ms)

    def _record_failure(self) -> None:
        self._metrics = self._metrics.with_failure()

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily initialize and return the async client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.httpx_timeout())
        return self._client

    def _retry_logger(
        self, url: str, max_attempts: int
    ) -> Callable[[int, float, BaseException], None]:
        def _log(attempt: int, delay: float, exc: BaseException) -> None:
            self._metrics = self._metrics.with_retry()
            log.warning(
                "Retrying %s request to %s (attempt %d/%d) in %.2fs: %s",
                self.provider,
                url,
                attempt,
                max_attempts,
                delay,
                exc,
            )

        return _log

    async def post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        """POST *body* and return the decoded JSON response.

        Each attempt is bounded by *timeout_s* (default: the config's request
        timeout). A timeout consumes one transport attempt.

        Raises:
            TransportError: network/timeout/5xx failures outlived every attempt.
            RateLimitError: the provider answered 429.
            APIError: any other non-2xx answer.
            SerializationError: the 2xx body was not JSON.
        """
        attempts = max_attempts or self.config.max_attempts
        timeout = timeout_s or self.config.request_timeout_s
        client = self._get_client()
        started = time.perf_counter()

        async def _attempt(attempt: int) -> httpx.Response:
            log.debug(
                "POST %s (provider=%s, attempt %d/%d)",
                url,
                self.provider,
                attempt,
                attempts,
            )
            try:
                async with asyncio.timeout(timeout):
                    response = await client.post(
                        url,
                        json=body,
                        headers=self._headers,
                        timeout=self.config.httpx_timeout(timeout),
                    )
            except Exception as exc:
                raise wrap_transport_error(
                    exc, provider=self.provider, phase="request", attempts=attempt
                ) from exc
            if response.is_success:
                return response
            raise error_from_response(
                response.status_code,
                response.text,
                headers=response.headers,
                provider=self.provider,
                phase="request",
                attempts=attempt,
            )

        try:
            response = await retry_async(
                _attempt,
                max_attempts=attempts,
                base_delay_s=self.config.base_delay_s,
                max_delay_s=self.config.max_delay_s,
                on_retry=self._retry_logger(url, attempts),
            )
        except TransportError as exc:
            self._record_failure()
            log.error(
                "%s request to %s failed after %s attempt(s) in %.0fms: %s",
                self.provider,
                url,
                exc.attempts,
                (time.perf_counter() - started) * 1000,
                exc,
            )
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success(started)
        return _decode_json(response, provider=self.provider)

    async def get_json(self, url: str, *, timeout_s: float | None = None) -> Any:
        """GET *url* once, without retry, and return the decoded JSON body."""
        timeout = timeout_s or self.config.request_timeout_s
        client = self._get_client()
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                response = await client.get(
                    url,
                    headers=self._headers,
                    timeout=self.config.httpx_timeout(timeout),
                )
        except Exception as exc:
            self._record_failure()
            raise wrap_transport_error(
                exc, provider=self.provider, phase="request", attempts=1
            ) from exc
        if not response.is_success:
            self._record_failure()
            raise error_from_response(
                response.status_code,
                response.text,
                headers=response.headers,
                provider=self.provider,
                phase="request",
                attempts=1,
            )
        self._record_success(started)
        return _decode_json(response, provider=self.provider)

    @asynccontextmanager
    async def stream_lines(
        self,
        url: str,
        body: dict[str, Any],
        *,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streaming POST and yield an iterator over non-empty lines.

        Transport retry covers only opening the stream (connect and status
        line). Once lines flow, a failure raises ``TransportError`` with
        ``phase="stream"`` and is never retried here. Leaving the context
        closes the response, including when the consumer stops early.
        """
        attempts = max_attempts or self.config.max_attempts
        timeout = timeout_s or self.config.request_timeout_s
        client = self._get_client()

        async def _open(attempt: int) -> httpx.Response:
            log.debug(
                "POST %s (provider=%s, stream, attempt %d/%d)",
                url,
                self.provider,
                attempt,
                attempts,
            )
            request = client.build_request(
                "POST",
                url,
                json=body,
                headers=self._headers,
                timeout=self.config.httpx_timeout(timeout),
            )
            try:
                async with asyncio.timeout(timeout):
                    response = await client.send(request, stream=True)
            except Exception as exc:
                raise wrap_transport_error(
                    exc, provider=self.provider, phase="connect", attempts=attempt
                ) from exc
            if response.is_success:
                return response
            try:
                await response.aread()
                text = response.text
            finally:
                await response.aclose()
            raise error_from_response(
                response.status_code,
                text,
                headers=response.headers,
                provider=self.provider,
                phase="connect",
                attempts=attempt,
            )

        started = time.perf_counter()
        try:
            response = await retry_async(
                _open,
                max_attempts=attempts,
                base_delay_s=self.config.base_delay_s,
                max_delay_s=self.config.max_delay_s,
                on_retry=self._retry_logger(url, attempts),
            )
        except Exception:
            self._record_failure()
            raise
        self._record_success(started)
        lines = self._iter_lines(response)
        try:
            yield lines
        finally:
            await lines.aclose()
            await response.aclose()

    async def _iter_lines(self, response: httpx.Response) -> AsyncGenerator[str]:
        try:
            async for line in response.aiter_lines():
                stripped = line.strip()
                if stripped:
                    yield stripped
        except httpx.HTTPError as exc:
            raise wrap_transport_error(
                exc, provider=self.provider, phase="stream", attempts=1
            ) from exc

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        client = self._client
        if client is None or not self._owns_client:
            return
        self._client = None
        await client.aclose()


def _decode_json(response: httpx.Response, *, provider: str) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SerializationError(
            f"{provider} returned a non-JSON body (status={response.status_code})",
            retryable=False,
            status_code=response.status_code,
            provider=provider,
            phase="decode",
        ) from exc

"""Dispatcher: adapter registry, request resolution, and retry-then-fallback.

A dispatch walks an ordered candidate list (the requested provider, then the
configured fallbacks). Each candidate gets one adapter call, which performs
its own transport retry. Failures are classified: retryable ones advance to
the next candidate, everything else is terminal. Candidates are tried strictly
one after another.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, replace
import logging
import threading
import time
from types import MappingProxyType
from typing import TYPE_CHECKING
import uuid

from llmux.classify import Disposition, classify
from llmux.config import DispatchConfig
from llmux.errors import (
    ConfigurationError,
    InternalError,
    InvalidRequestError,
    StreamInterruptedError,
    UnsupportedProviderError,
)
from llmux.providers.base import ProviderAdapter, ensure_model_supported
from llmux.records import CallRecord
from llmux.types import Role

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable, Mapping
    from types import TracebackType

    from llmux.types import Delta, DispatchRequest, DispatchResponse

log = logging.getLogger(__name__)

_ROLES = frozenset(r.value for r in Role)


@dataclass(frozen=True)
class Candidate:
    """One attempt: a provider id, its adapter, and the request to send."""

    provider: str
    adapter: ProviderAdapter
    request: DispatchRequest


@dataclass(frozen=True)
class DispatchPlan:
    """Ordered provider ids for one dispatch, bound to one registry snapshot.

    Candidates are looked up only when an attempt reaches them, so a missing
    or mismatched fallback never blocks a primary that succeeds.
    """

    request: DispatchRequest
    providers: tuple[str, ...]
    adapters: Mapping[str, ProviderAdapter]
    fallback_models: Mapping[str, str]

    def candidate(self, index: int) -> Candidate:
        """Resolve the candidate at *index* against the snapshot.

        Raises:
            UnsupportedProviderError: The provider is not registered.
            ModelNotAvailableError: The adapter's catalog lacks the model.
        """
        provider = self.providers[index]
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(
                provider,
                hint=(
                    f"Registered providers: {sorted(self.adapters) or 'none'}. "
                    "Register an adapter with Dispatcher.register() first."
                ),
            )
        model = self.request.model
        if index > 0:
            model = self.fallback_models.get(provider, model)
        ensure_model_supported(provider, model, adapter.supported_models)
        return Candidate(
            provider=provider,
            adapter=adapter,
            request=replace(self.request, provider=provider, model=model),
        )


class Dispatcher:
    """Route unified chat requests to registered provider adapters.

    The registry is copy-on-write: writers serialize on a lock and swap in a
    new mapping, readers take a snapshot without locking. Nothing else is
    shared between concurrent dispatches.

    Example:
        async with Dispatcher(DispatchConfig(fallback_providers=("dashscope",))) as d:
            d.register("ollama", OllamaAdapter())
            d.register("dashscope", DashScopeAdapter())
            response = await d.dispatch(
                DispatchRequest("ollama", "llama3", [Message.user("hi")])
            )
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        *,
        on_call: Callable[[CallRecord], None] | None = None,
    ) -> None:
        """Initialize with immutable defaults and an optional call-log observer."""
        self.config = config or DispatchConfig()
        self._on_call = on_call
        self._lock = threading.Lock()
        self._adapters: Mapping[str, ProviderAdapter] = MappingProxyType({})

    # --- Registry ---

    def register(self, provider: str, adapter: ProviderAdapter) -> None:
        """Register *adapter* under *provider*, replacing any previous entry.

        A replaced adapter is not closed; its owner remains responsible for it.
        """
        if not provider:
            raise ConfigurationError("provider id must be a non-empty string")
        if not isinstance(adapter, ProviderAdapter):
            raise ConfigurationError(
                f"{type(adapter).__name__} does not implement ProviderAdapter",
                hint="Adapters need name, supported_models, call, call_stream and aclose.",
            )
        with self._lock:
            updated = dict(self._adapters)
            updated[provider] = adapter
            self._adapters = MappingProxyType(updated)
        log.debug("Registered adapter %r for provider %r", adapter, provider)

    def register_many(self, adapters: Mapping[str, ProviderAdapter]) -> None:
        """Register several adapters as a single registry update."""
        for provider, adapter in adapters.items():
            if not provider or not isinstance(adapter, ProviderAdapter):
                raise ConfigurationError(
                    f"invalid registration for provider {provider!r}"
                )
        with self._lock:
            self._adapters = MappingProxyType({**self._adapters, **adapters})

    def unregister(self, provider: str) -> ProviderAdapter | None:
        """Remove and return the adapter registered under *provider*, if any."""
        with self._lock:
            if provider not in self._adapters:
                return None
            updated = dict(self._adapters)
            adapter = updated.pop(provider)
            self._adapters = MappingProxyType(updated)
        return adapter

    def get(self, provider: str) -> ProviderAdapter | None:
        return self._adapters.get(provider)

    def providers(self) -> list[str]:
        """Return registered provider ids, sorted."""
        return sorted(self._adapters)

    def is_provider_available(self, provider: str) -> bool:
        return provider in self._adapters

    def list_models(
        self, provider: str | None = None
    ) -> dict[str, frozenset[str] | None]:
        """Return each provider's model catalog (*None* means any model).

        Raises:
            UnsupportedProviderError: *provider* is given but not registered.
        """
        adapters = self._adapters
        if provider is not None:
            if provider not in adapters:
                raise UnsupportedProviderError(provider)
            return {provider: adapters[provider].supported_models}
        return {pid: adapter.supported_models for pid, adapter in adapters.items()}

    # --- Resolution ---

    def resolve(self, request: DispatchRequest) -> DispatchRequest:
        """Return a validated copy of *request* with config defaults applied.

        The caller's request is never modified.
        """
        config = self.config
        resolved = replace(
            request,
            temperature=(
                request.temperature
                if request.temperature is not None
                else config.temperature
            ),
            timeout_s=(
                request.timeout_s if request.timeout_s is not None else config.timeout_s
            ),
            retry_count=(
                request.retry_count
                if request.retry_count is not None
                else config.retry_count
            ),
        )
        validate_request(resolved)
        return resolved

    def plan(self, request: DispatchRequest) -> DispatchPlan:
        """Validate *request* and order its candidates from one registry snapshot.

        The requested provider is checked here, before any network call.
        Fallback candidates are checked when an attempt reaches them.
        """
        resolved = self.resolve(request)
        order = [resolved.provider]
        if self.config.enable_fallback and resolved.fallback is not False:
            order.extend(
                p for p in self.config.fallback_providers if p not in order
            )
        plan = DispatchPlan(
            request=resolved,
            providers=tuple(order),
            adapters=self._adapters,
            fallback_models=self.config.fallback_models,
        )
        plan.candidate(0)
        return plan

    def _reach(
        self,
        cid: str,
        plan: DispatchPlan,
        index: int,
        previous: Exception | None,
    ) -> Candidate:
        try:
            return plan.candidate(index)
        except ConfigurationError as exc:
            if previous is None:
                raise
            log.error(
                "[%s] Cannot fall back to %s: %s", cid, plan.providers[index], exc
            )
            raise exc from previous

    # --- Dispatch ---

    async def dispatch(self, request: DispatchRequest) -> DispatchResponse:
        """Send *request* and return the response of the attempt that succeeded.

        Raises:
            InvalidRequestError: The request failed validation; nothing was sent.
            UnsupportedProviderError: The requested provider, or a fallback the
                dispatch reached, is not registered.
            ModelNotAvailableError: A reached candidate does not serve its model.
            APIError: The last failure once no candidate is left, or the first
                non-retryable one.
        """
        cid = uuid.uuid4().hex[:8]
        plan = self.plan(replace(request, stream=False))
        last = len(plan.providers) - 1
        previous: Exception | None = None

        for index in range(len(plan.providers)):
            candidate = self._reach(cid, plan, index, previous)
            attempt = candidate.request
            log.debug(
                "[%s] Dispatching to %s (model=%s, candidate %d/%d)",
                cid,
                candidate.provider,
                attempt.model,
                index + 1,
                len(plan.providers),
            )
            started = time.perf_counter()
            try:
                response = await candidate.adapter.call(attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000
                self._record(
                    CallRecord.from_error(
                        exc,
                        provider=candidate.provider,
                        model=attempt.model,
                        duration_ms=elapsed_ms,
                    )
                )
                if classify(exc) is Disposition.FAIL or index == last:
                    log.error(
                        "[%s] Dispatch failed on %s after %d candidate(s): %s",
                        cid,
                        candidate.provider,
                        index + 1,
                        exc,
                    )
                    raise
                log.warning(
                    "[%s] %s failed (%s); falling back to %s",
                    cid,
                    candidate.provider,
                    exc,
                    plan.providers[index + 1],
                )
                previous = exc
                continue

            elapsed_ms = (time.perf_counter() - started) * 1000
            self._record(CallRecord.from_response(response, duration_ms=elapsed_ms))
            log.info(
                "[%s] Delivered response from %s (model=%s) in %.0fms",
                cid,
                response.provider,
                response.model,
                elapsed_ms,
            )
            return response

        raise InternalError("dispatch planned no candidates")  # pragma: no cover

    async def dispatch_stream(self, request: DispatchRequest) -> AsyncGenerator[Delta]:
        """Stream *request* as deltas.

        Fallback is only possible before the first delta reaches the caller.
        A failure after that raises ``StreamInterruptedError`` carrying the
        content already delivered. Stopping iteration early (``aclose()`` or
        leaving an ``aclosing`` block) releases the provider connection.
        """
        cid = uuid.uuid4().hex[:8]
        plan = self.plan(replace(request, stream=True))
        last = len(plan.providers) - 1
        previous: Exception | None = None

        for index in range(len(plan.providers)):
            candidate = self._reach(cid, plan, index, previous)
            attempt = candidate.request
            delivered: list[str] = []
            started_any = False
            final: Delta | None = None
            started = time.perf_counter()
            try:
                async with aclosing(candidate.adapter.call_stream(attempt)) as stream:
                    async for delta in stream:
                        started_any = True
                        delivered.append(delta.content)
                        if delta.done:
                            final = delta
                        yield delta
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000
                self._record(
                    CallRecord.from_error(
                        exc,
                        provider=candidate.provider,
                        model=attempt.model,
                        duration_ms=elapsed_ms,
                    )
                )
                if started_any:
                    partial = "".join(delivered)
                    log.error(
                        "[%s] Stream from %s interrupted after %d chars: %s",
                        cid,
                        candidate.provider,
                        len(partial),
                        exc,
                    )
                    raise StreamInterruptedError(
                        f"{candidate.provider} stream interrupted: {exc}",
                        provider=candidate.provider,
                        partial_content=partial,
                        hint="The partial content is valid; retry to get a full answer.",
                    ) from exc
                if classify(exc) is Disposition.FAIL or index == last:
                    log.error(
                        "[%s] Stream failed on %s after %d candidate(s): %s",
                        cid,
                        candidate.provider,
                        index + 1,
                        exc,
                    )
                    raise
                log.warning(
                    "[%s] %s stream failed before output (%s); falling back to %s",
                    cid,
                    candidate.provider,
                    exc,
                    plan.providers[index + 1],
                )
                previous = exc
                continue

            elapsed_ms = (time.perf_counter() - started) * 1000
            usage = final.usage if final is not None else None
            self._record(
                CallRecord(
                    model_id=f"{candidate.provider}:{attempt.model}",
                    status_code=200,
                    duration_ms=elapsed_ms,
                    tokens_output=usage.output_tokens if usage else None,
                )
            )
            log.info(
                "[%s] Delivered stream from %s (model=%s) in %.0fms",
                cid,
                candidate.provider,
                attempt.model,
                elapsed_ms,
            )
            return

    def _record(self, record: CallRecord) -> None:
        if self._on_call is None:
            return
        try:
            self._on_call(record)
        except Exception as exc:
            log.warning("Call-record observer failed: %s", exc)

    # --- Lifecycle ---

    async def aclose(self) -> None:
        """Close every registered adapter; failures are logged, not raised."""
        for provider, adapter in list(self._adapters.items()):
            try:
                await adapter.aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Adapter cleanup failed for %s: %s", provider, exc)

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"Dispatcher(providers={self.providers()!r}, config={self.config!r})"


def validate_request(request: DispatchRequest) -> None:
    """Raise ``InvalidRequestError`` naming the first offending field."""
    if not request.provider:
        raise InvalidRequestError("provider must be non-empty", field="provider")
    if not request.model:
        raise InvalidRequestError("model must be non-empty", field="model")
    if not request.messages:
        raise InvalidRequestError(
            "messages must contain at least one message", field="messages"
        )
    for i, message in enumerate(request.messages):
        if message.role not in _ROLES:
            raise InvalidRequestError(
                f"unknown role {message.role!r}",
                field=f"messages[{i}].role",
                hint=f"Use one of: {', '.join(sorted(_ROLES))}.",
            )
    if request.temperature is not None and not 0.0 <= request.temperature <= 2.0:
        raise InvalidRequestError(
            f"temperature must be within [0, 2], got {request.temperature}",
            field="temperature",
        )
    if request.top_p is not None and not 0.0 <= request.top_p <= 1.0:
        raise InvalidRequestError(
            f"top_p must be within [0, 1], got {request.top_p}", field="top_p"
        )
    if request.max_tokens is not None and request.max_tokens <= 0:
        raise InvalidRequestError(
            f"max_tokens must be > 0, got {request.max_tokens}", field="max_tokens"
        )
    if request.timeout_s is not None and request.timeout_s <= 0:
        raise InvalidRequestError(
            f"timeout_s must be > 0, got {request.timeout_s}", field="timeout_s"
        )
    if request.retry_count is not None and request.retry_count < 1:
        raise InvalidRequestError(
            f"retry_count must be >= 1, got {request.retry_count}",
            field="retry_count",
        )


"""Exception hierarchy for llmux."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class LlmuxError(Exception):
    """Base exception for all llmux errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(LlmuxError):
    """Configuration validation or resolution failed."""


class UnsupportedProviderError(ConfigurationError):
    """No adapter is registered under the requested provider id."""

    def __init__(
        self, provider: str, *, message: str | None = None, hint: str | None = None
    ) -> None:
        super().__init__(
            message or f"Provider not registered: {provider!r}",
            hint=hint or "Register an adapter with Dispatcher.register() first.",
        )
        self.provider = provider


class ModelNotAvailableError(ConfigurationError):
    """The resolved provider does not serve the requested model."""

    def __init__(
        self, provider: str, model: str, *, hint: str | None = None
    ) -> None:
        super().__init__(
            f"Model {model!r} is not available for provider {provider!r}",
            hint=hint,
        )
        self.provider = provider
        self.model = model


class InvalidRequestError(LlmuxError):
    """Caller-supplied request data failed validation before any network call."""

    def __init__(
        self, message: str, *, field: str | None = None, hint: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.field = field


class InternalError(LlmuxError):
    """An llmux internal error (bug) or invariant violation."""


class APIError(LlmuxError):
    """A provider call failed.

    Adapters attach retry metadata so the dispatcher can decide between
    falling back and failing without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429) or provider throttling."""


class TransportError(APIError):
    """Network, timeout, or server-side failure that survived transport retries."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int | None = None,
        hint: str | None = None,
        retryable: bool | None = True,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(
            message,
            hint=hint,
            retryable=retryable,
            status_code=status_code,
            retry_after_s=retry_after_s,
            provider=provider,
            phase=phase,
        )
        self.attempts = attempts


class SerializationError(APIError):
    """Provider returned a body that does not match its documented wire format."""


class StreamInterruptedError(LlmuxError):
    """A stream failed after content had already been delivered to the caller.

    ``partial_content`` holds everything yielded before the failure. That text
    remains valid; the original failure is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        partial_content: str,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.partial_content = partial_content


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)

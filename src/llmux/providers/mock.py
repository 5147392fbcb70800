"""Mock adapter for testing and offline use."""

from __future__ import annotations

from typing import TYPE_CHECKING

from llmux.providers.base import ensure_model_supported
from llmux.types import Delta, DispatchResponse, Role, TokenUsage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from llmux.types import DispatchRequest


class MockAdapter:
    """Deterministic adapter that echoes the last user message.

    Usage counts are whitespace-separated words, so results are stable across
    runs. Streaming yields the echo one word at a time.
    """

    def __init__(
        self, name: str = "mock", *, models: Iterable[str] | None = None
    ) -> None:
        self.name = name
        self._models = frozenset(models) if models is not None else None

    @property
    def supported_models(self) -> frozenset[str] | None:
        return self._models

    def _echo(self, request: DispatchRequest) -> tuple[str, TokenUsage]:
        prompt = next(
            (m.content for m in reversed(request.messages) if m.role == Role.USER),
            "",
        )
        text = f"echo: {prompt[:100]}"
        input_tokens = sum(len(m.content.split()) for m in request.messages)
        return text, TokenUsage(
            input_tokens=input_tokens, output_tokens=len(text.split())
        )

    async def call(self, request: DispatchRequest) -> DispatchResponse:
        """Return a deterministic echo response."""
        ensure_model_supported(self.name, request.model, self._models)
        text, usage = self._echo(request)
        return DispatchResponse(
            content=text,
            provider=request.provider,
            model=request.model,
            usage=usage,
            finish_reason="stop",
        )

    async def call_stream(self, request: DispatchRequest) -> AsyncIterator[Delta]:
        ensure_model_supported(self.name, request.model, self._models)
        text, usage = self._echo(request)
        words = text.split(" ")
        for i, word in enumerate(words):
            yield Delta(
                content=word if i == len(words) - 1 else f"{word} ",
                provider=request.provider,
            )
        yield Delta(
            done=True, provider=request.provider, finish_reason="stop", usage=usage
        )

    async def aclose(self) -> None:
        return None

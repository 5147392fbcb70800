"""Adapter protocol: the two-operation capability set every backend implements."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from llmux.errors import ModelNotAvailableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.types import Delta, DispatchRequest, DispatchResponse


@runtime_checkable
class ProviderAdapter(Protocol):
    """Translate unified requests to one backend and its answers back.

    Adapters perform transport retry for network/5xx failures internally but
    never fall back to another provider; each call surfaces exactly one
    classified error on failure.
    """

    name: str

    @property
    def supported_models(self) -> frozenset[str] | None:
        """Models this adapter serves, or *None* when any name is accepted."""
        ...

    async def call(self, request: DispatchRequest) -> DispatchResponse:
        """Perform one blocking call and return the normalized response."""
        ...

    def call_stream(self, request: DispatchRequest) -> AsyncIterator[Delta]:
        """Return a lazy, finite sequence of deltas ending with ``done=True``."""
        ...

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        ...


def ensure_model_supported(
    provider: str, model: str, supported: frozenset[str] | None
) -> None:
    """Raise ``ModelNotAvailableError`` when *model* is outside the catalog."""
    if supported is None or model in supported:
        return
    known = ", ".join(sorted(supported)) or "none"
    raise ModelNotAvailableError(
        provider, model, hint=f"Models served by {provider!r}: {known}."
    )

"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off adapters as coverage expands.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
import json
from typing import Any

import httpx

from llmux.transport import TransportConfig
from llmux.types import Delta, DispatchRequest, DispatchResponse, Message

#: Transport settings that never sleep between attempts.
FAST_TRANSPORT = TransportConfig(base_delay_s=0.0, max_attempts=3)


def make_request(
    provider: str = "a", model: str = "m", **kwargs: Any
) -> DispatchRequest:
    """Build the canonical one-turn request used across dispatcher tests."""
    return DispatchRequest(
        provider=provider,
        model=model,
        messages=(Message.user("hi"),),
        **kwargs,
    )


@dataclass
class ScriptedAdapter:
    """Adapter that returns a scripted sequence of results/exceptions.

    Strings become responses with that content; exceptions are raised.
    """

    name: str = "scripted"
    script: list[DispatchResponse | BaseException | str] = field(default_factory=list)
    models: frozenset[str] | None = None
    calls: int = 0
    stream_calls: int = 0
    closed: int = 0
    requests: list[DispatchRequest] = field(default_factory=list)
    #: One list per call_stream invocation; exceptions are raised in place.
    streams: list[list[Delta | BaseException]] = field(default_factory=list)
    stream_closed: int = 0

    @property
    def supported_models(self) -> frozenset[str] | None:
        return self.models

    async def call(self, request: DispatchRequest) -> DispatchResponse:
        self.calls += 1
        self.requests.append(request)
        await asyncio.sleep(0)
        item: DispatchResponse | BaseException | str = (
            self.script.pop(0) if self.script else "ok"
        )
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return DispatchResponse(
                content=item, provider=request.provider, model=request.model
            )
        return item

    async def call_stream(self, request: DispatchRequest):
        self.stream_calls += 1
        self.requests.append(request)
        items = self.streams.pop(0) if self.streams else [Delta(done=True)]
        try:
            for item in items:
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                yield replace(item, provider=request.provider)
        finally:
            self.stream_closed += 1

    async def aclose(self) -> None:
        self.closed += 1


class TrackingStream(httpx.AsyncByteStream):
    """Response body that yields chunks and records whether it was closed."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.closed = False
        self.yielded = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            self.yielded += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class Recorder:
    """httpx handler wrapper that records requests before delegating."""

    handler: Callable[[httpx.Request], Any]
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        return self.handler(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    """Return an AsyncClient whose requests are answered by *handler*."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def ndjson(*docs: dict[str, Any]) -> bytes:
    return b"".join(json.dumps(d).encode() + b"\n" for d in docs)


def sse(*events: dict[str, Any] | str) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()

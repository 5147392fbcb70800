"""Ollama adapter: local inference server, ``/api/chat`` NDJSON protocol."""

from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from llmux.errors import APIError, TransportError
from llmux.providers._utils import (
    decode_json_line,
    drop_none,
    parse_wire,
    tools_to_wire,
)
from llmux.providers.base import ensure_model_supported
from llmux.transport import ClientMetrics, HttpTransport, TransportConfig
from llmux.types import Delta, DispatchResponse, TokenUsage, ToolCall, utc_now_iso

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    import httpx

    from llmux.types import DispatchRequest, Message

DEFAULT_BASE_URL = "http://localhost:11434"
_NS_PER_MS = 1_000_000


class _WireFunction(BaseModel):
    name: str
    arguments: Any = Field(default_factory=dict)


class _WireToolCall(BaseModel):
    function: _WireFunction


class _WireMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "assistant"
    content: str = ""
    thinking: str | None = None
    tool_calls: list[_WireToolCall] | None = None


class _ChatResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    created_at: str | None = None
    message: _WireMessage | None = None
    done: bool = False
    done_reason: str | None = None
    #: Nanoseconds.
    total_duration: int | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    error: str | None = None


class _TagModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class _TagsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    models: list[_TagModel] = Field(default_factory=list)


class OllamaAdapter:
    """Adapter for an Ollama server.

    The base URL comes from the argument, then ``OLLAMA_BASE_URL``, then
    ``http://localhost:11434``. Any model name is accepted unless *models*
    restricts the catalog.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        config: TransportConfig | None = None,
        client: httpx.AsyncClient | None = None,
        models: Iterable[str] | None = None,
        name: str = "ollama",
    ) -> None:
        """Initialize; the HTTP client is created on first use unless injected."""
        self.name = name
        self.base_url = (
            base_url or os.environ.get("OLLAMA_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self._models = frozenset(models) if models is not None else None
        self._transport = HttpTransport(config, provider=name, client=client)

    @property
    def supported_models(self) -> frozenset[str] | None:
        return self._models

    @property
    def transport_config(self) -> TransportConfig:
        return self._transport.config

    @property
    def metrics(self) -> ClientMetrics:
        """Request counters of this adapter's HTTP transport."""
        return self._transport.metrics

    def _body(self, request: DispatchRequest, *, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [_message_to_wire(m) for m in request.messages],
            "stream": stream,
        }
        options = drop_none(
            {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
                "top_p": request.top_p,
                "stop": list(request.stop) if request.stop else None,
                "seed": request.seed,
                "frequency_penalty": request.frequency_penalty,
                "presence_penalty": request.presence_penalty,
            }
        )
        if options:
            body["options"] = options
        tools = tools_to_wire(request)
        if tools:
            body["tools"] = tools
        return body

    async def call(self, request: DispatchRequest) -> DispatchResponse:
        """POST ``/api/chat`` with ``stream=false`` and normalize the answer."""
        ensure_model_supported(self.name, request.model, self._models)
        started = time.perf_counter()
        data = await self._transport.post_json(
            f"{self.base_url}/api/chat",
            self._body(request, stream=False),
            timeout_s=request.timeout_s,
            max_attempts=request.retry_count,
        )
        wall_ms = (time.perf_counter() - started) * 1000
        parsed = parse_wire(_ChatResponse, data, provider=self.name)
        if parsed.error:
            raise APIError(
                f"{self.name} error: {parsed.error}",
                retryable=False,
                provider=self.name,
                phase="response",
            )
        message = parsed.message or _WireMessage()
        return DispatchResponse(
            content=message.content,
            provider=request.provider,
            model=parsed.model or request.model,
            usage=_usage(parsed),
            finish_reason=parsed.done_reason,
            created_at=parsed.created_at or utc_now_iso(),
            total_duration_ms=_duration_ms(parsed) or wall_ms,
            thinking=message.thinking or None,
            tool_calls=_tool_calls(message),
        )

    async def call_stream(self, request: DispatchRequest) -> AsyncIterator[Delta]:
        """Stream ``/api/chat`` NDJSON lines as deltas.

        Each line is a full JSON document; the last one has ``done: true`` and
        carries the counters. A stream that ends without it is a transport
        failure.
        """
        ensure_model_supported(self.name, request.model, self._models)
        url = f"{self.base_url}/api/chat"
        async with self._transport.stream_lines(
            url,
            self._body(request, stream=True),
            timeout_s=request.timeout_s,
            max_attempts=request.retry_count,
        ) as lines:
            async for line in lines:
                data = decode_json_line(line, provider=self.name)
                chunk = parse_wire(
                    _ChatResponse, data, provider=self.name, phase="stream"
                )
                if chunk.error:
                    raise APIError(
                        f"{self.name} stream error: {chunk.error}",
                        retryable=False,
                        provider=self.name,
                        phase="stream",
                    )
                message = chunk.message or _WireMessage()
                tool_calls = _tool_calls(message)
                if chunk.done:
                    yield Delta(
                        content=message.content,
                        done=True,
                        provider=request.provider,
                        thinking=message.thinking or None,
                        tool_calls=tool_calls,
                        finish_reason=chunk.done_reason,
                        usage=_usage(chunk),
                    )
                    return
                if message.content or message.thinking or tool_calls:
                    yield Delta(
                        content=message.content,
                        provider=request.provider,
                        thinking=message.thinking or None,
                        tool_calls=tool_calls,
                    )
        raise TransportError(
            f"{self.name} stream ended before the final chunk",
            provider=self.name,
            phase="stream",
        )

    async def list_models(self) -> list[str]:
        """Return the names of models installed on the server (``/api/tags``)."""
        data = await self._transport.get_json(f"{self.base_url}/api/tags")
        tags = parse_wire(_TagsResponse, data, provider=self.name)
        return [m.name for m in tags.models]

    async def aclose(self) -> None:
        await self._transport.aclose()

    def __repr__(self) -> str:
        return f"OllamaAdapter(name={self.name!r}, base_url={self.base_url!r})"


def _message_to_wire(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.thinking:
        out["thinking"] = message.thinking
    if message.images:
        out["images"] = list(message.images)
    if message.tool_calls:
        out["tool_calls"] = [
            {"function": {"name": c.name, "arguments": c.arguments}}
            for c in message.tool_calls
        ]
    if message.tool_name:
        out["tool_name"] = message.tool_name
    return out


def _tool_calls(message: _WireMessage) -> tuple[ToolCall, ...]:
    if not message.tool_calls:
        return ()
    return tuple(
        ToolCall(name=c.function.name, arguments=c.function.arguments)
        for c in message.tool_calls
    )


def _usage(chunk: _ChatResponse) -> TokenUsage | None:
    if chunk.prompt_eval_count is None and chunk.eval_count is None:
        return None
    return TokenUsage(
        input_tokens=chunk.prompt_eval_count or 0,
        output_tokens=chunk.eval_count or 0,
    )


def _duration_ms(chunk: _ChatResponse) -> float | None:
    if chunk.total_duration is None:
        return None
    return chunk.total_duration / _NS_PER_MS

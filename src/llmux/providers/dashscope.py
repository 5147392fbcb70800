"""DashScope adapter: Alibaba Cloud Qwen models via the OpenAI-compatible API.

Wire notes:
- Requests go to ``{base}/compatible-mode/v1/chat/completions`` with Bearer auth.
- The service may answer HTTP 200 with a top-level ``{"error": {...}}`` body;
  that is an API error, not a success.
- Streams are server-sent events (``data: {...}``) ending with ``data: [DONE]``.
  With ``stream_options.include_usage`` the last chunk has no choices and
  carries the usage block.
"""

from __future__ import annotations

from datetime import UTC, datetime
import json
import os
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from llmux.errors import (
    APIError,
    ConfigurationError,
    RateLimitError,
    SerializationError,
    TransportError,
)
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

DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com"
_CHAT_PATH = "/compatible-mode/v1/chat/completions"
_SSE_DATA = "data:"
_SSE_DONE = "[DONE]"

# Error bodies that mean "busy, try elsewhere" rather than "bad request".
_THROTTLING_CODE_PREFIX = "Throttling"
_RATE_LIMIT_TYPES = frozenset({"rate_limit_exceeded", "limit_requests"})
_OVERLOAD_CODES = frozenset({"ServiceUnavailable", "ModelServingError"})
_OVERLOAD_TYPES = frozenset({"service_unavailable", "server_overloaded"})

DEFAULT_MODELS = frozenset(
    {
        "qwen-plus",
        "qwen-turbo",
        "qwen-max",
        "qwen-max-1201",
        "qwen-max-longcontext",
        "qwen2.5-72b-instruct",
        "qwen2.5-32b-instruct",
        "qwen2.5-14b-instruct",
        "qwen2.5-7b-instruct",
        "qwen2.5-3b-instruct",
        "qwen2.5-1.5b-instruct",
        "qwen2.5-0.5b-instruct",
    }
)


class _WireFunction(BaseModel):
    name: str | None = None
    arguments: str | dict[str, Any] | None = None


class _WireToolCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int | None = None
    id: str | None = None
    type: str | None = None
    function: _WireFunction = Field(default_factory=_WireFunction)


class _WireMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[_WireToolCall] | None = None


class _Choice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: _WireMessage | None = None
    delta: _WireMessage | None = None
    finish_reason: str | None = None


class _Usage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0


class _ErrorBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str = ""
    code: str | None = None
    type: str | None = None


class _Completion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    created: int | None = None
    model: str | None = None
    choices: list[_Choice] = Field(default_factory=list)
    usage: _Usage | None = None
    error: _ErrorBody | None = None


class DashScopeAdapter:
    """Adapter for Alibaba Cloud DashScope (Qwen) models.

    The API key comes from the argument or ``DASHSCOPE_API_KEY``; the base URL
    from the argument, ``DASHSCOPE_BASE_URL``, or the public endpoint.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        config: TransportConfig | None = None,
        client: httpx.AsyncClient | None = None,
        models: Iterable[str] | None = DEFAULT_MODELS,
        name: str = "dashscope",
    ) -> None:
        """Initialize and resolve credentials.

        Raises:
            ConfigurationError: No API key was given or found in the environment.
        """
        resolved_key = api_key or os.environ.get("DASHSCOPE_API_KEY")
        if not resolved_key:
            raise ConfigurationError(
                "API key required for dashscope",
                hint="Set DASHSCOPE_API_KEY environment variable or pass api_key=...",
            )
        self.name = name
        self.api_key = resolved_key
        self.base_url = (
            base_url or os.environ.get("DASHSCOPE_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self._models = frozenset(models) if models is not None else None
        self._transport = HttpTransport(
            config,
            provider=name,
            headers={"Authorization": f"Bearer {resolved_key}"},
            client=client,
        )

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

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{_CHAT_PATH}"

    def _body(self, request: DispatchRequest, *, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [_message_to_wire(m) for m in request.messages],
            "stream": stream,
            "result_format": "message",
        }
        body.update(
            drop_none(
                {
                    "temperature": request.temperature,
                    "max_tokens": request.max_tokens,
                    "top_p": request.top_p,
                    "stop": list(request.stop) if request.stop else None,
                    "seed": request.seed,
                    "frequency_penalty": request.frequency_penalty,
                    "presence_penalty": request.presence_penalty,
                    "tools": tools_to_wire(request),
                }
            )
        )
        if stream:
            body["incremental_output"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    async def call(self, request: DispatchRequest) -> DispatchResponse:
        """POST a non-streaming chat completion and normalize the answer."""
        ensure_model_supported(self.name, request.model, self._models)
        started = time.perf_counter()
        data = await self._transport.post_json(
            self.endpoint,
            self._body(request, stream=False),
            timeout_s=request.timeout_s,
            max_attempts=request.retry_count,
        )
        wall_ms = (time.perf_counter() - started) * 1000
        completion = parse_wire(_Completion, data, provider=self.name)
        if completion.error is not None:
            raise self._body_error(completion.error, phase="response")
        if not completion.choices or completion.choices[0].message is None:
            raise SerializationError(
                f"{self.name} response has no choices",
                retryable=False,
                provider=self.name,
                phase="decode",
            )
        choice = completion.choices[0]
        message = choice.message or _WireMessage()
        return DispatchResponse(
            content=message.content or "",
            provider=request.provider,
            model=completion.model or request.model,
            usage=_usage(completion.usage),
            finish_reason=choice.finish_reason,
            request_id=completion.id,
            created_at=_created_at(completion.created),
            total_duration_ms=wall_ms,
            thinking=message.reasoning_content or None,
            tool_calls=_tool_calls(message.tool_calls or []),
        )

    async def call_stream(self, request: DispatchRequest) -> AsyncIterator[Delta]:
        """Stream SSE chunks as deltas.

        Tool calls arrive in fragments keyed by ``index``; they are assembled
        and delivered on the final delta together with usage.
        """
        ensure_model_supported(self.name, request.model, self._models)
        finish_reason: str | None = None
        usage: TokenUsage | None = None
        pending_tools: dict[int, dict[str, Any]] = {}

        async with self._transport.stream_lines(
            self.endpoint,
            self._body(request, stream=True),
            timeout_s=request.timeout_s,
            max_attempts=request.retry_count,
        ) as lines:
            async for line in lines:
                if not line.startswith(_SSE_DATA):
                    continue
                payload = line[len(_SSE_DATA) :].strip()
                if payload == _SSE_DONE:
                    yield Delta(
                        done=True,
                        provider=request.provider,
                        tool_calls=_assembled_tool_calls(pending_tools),
                        finish_reason=finish_reason,
                        usage=usage,
                    )
                    return
                data = decode_json_line(payload, provider=self.name)
                chunk = parse_wire(_Completion, data, provider=self.name, phase="stream")
                if chunk.error is not None:
                    raise self._body_error(chunk.error, phase="stream")
                if chunk.usage is not None:
                    usage = _usage(chunk.usage)
                for choice in chunk.choices:
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                    delta = choice.delta
                    if delta is None:
                        continue
                    for fragment in delta.tool_calls or []:
                        _merge_tool_fragment(pending_tools, fragment)
                    if delta.content or delta.reasoning_content:
                        yield Delta(
                            content=delta.content or "",
                            provider=request.provider,
                            thinking=delta.reasoning_content or None,
                        )
        raise TransportError(
            f"{self.name} stream ended before [DONE]",
            provider=self.name,
            phase="stream",
        )

    def _body_error(self, error: _ErrorBody, *, phase: str) -> APIError:
        """Map an ``{"error": {...}}`` body; throttling and overload may fall back."""
        code = error.code or ""
        detail = f" ({code})" if code else ""
        message = f"{self.name} error{detail}: {error.message or 'unknown error'}"
        if code.startswith(_THROTTLING_CODE_PREFIX) or error.type in _RATE_LIMIT_TYPES:
            return RateLimitError(
                message,
                retryable=True,
                provider=self.name,
                phase=phase,
                hint="Throttled by DashScope; retry later or raise the quota.",
            )
        overloaded = code.split(".", 1)[0] in _OVERLOAD_CODES
        return APIError(
            message,
            retryable=overloaded or error.type in _OVERLOAD_TYPES,
            provider=self.name,
            phase=phase,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()

    def __repr__(self) -> str:
        return (
            f"DashScopeAdapter(name={self.name!r}, base_url={self.base_url!r}, "
            f"api_key='[REDACTED]')"
        )


def _image_url(image: str) -> str:
    if image.startswith(("http://", "https://", "data:")):
        return image
    return f"data:image/png;base64,{image}"


def _message_to_wire(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role}
    if message.images:
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"type": "text", "text": message.content})
        parts.extend(
            {"type": "image_url", "image_url": {"url": _image_url(img)}}
            for img in message.images
        )
        out["content"] = parts
    else:
        out["content"] = message.content
    if message.tool_calls:
        out["tool_calls"] = [
            {
                "id": call.id or f"call_{i}",
                "type": call.type,
                "function": {
                    "name": call.name,
                    "arguments": call.arguments
                    if isinstance(call.arguments, str)
                    else json.dumps(call.arguments),
                },
            }
            for i, call in enumerate(message.tool_calls)
        ]
    if message.tool_call_id:
        out["tool_call_id"] = message.tool_call_id
    if message.role == "tool" and message.tool_name:
        out["name"] = message.tool_name
    return out


def _decode_arguments(raw: str | dict[str, Any] | None) -> Any:
    if raw is None:
        return {}
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _tool_calls(calls: list[_WireToolCall]) -> tuple[ToolCall, ...]:
    return tuple(
        ToolCall(
            name=c.function.name or "",
            arguments=_decode_arguments(c.function.arguments),
            id=c.id,
            type=c.type or "function",
        )
        for c in calls
    )


def _merge_tool_fragment(
    pending: dict[int, dict[str, Any]], fragment: _WireToolCall
) -> None:
    index = fragment.index if fragment.index is not None else len(pending)
    entry = pending.setdefault(
        index, {"id": None, "type": None, "name": "", "arguments": ""}
    )
    if fragment.id:
        entry["id"] = fragment.id
    if fragment.type:
        entry["type"] = fragment.type
    if fragment.function.name:
        entry["name"] += fragment.function.name
    arguments = fragment.function.arguments
    if isinstance(arguments, str):
        entry["arguments"] += arguments
    elif arguments is not None:
        entry["arguments"] = json.dumps(arguments)


def _assembled_tool_calls(pending: dict[int, dict[str, Any]]) -> tuple[ToolCall, ...]:
    return tuple(
        ToolCall(
            name=entry["name"],
            arguments=_decode_arguments(entry["arguments"] or None),
            id=entry["id"],
            type=entry["type"] or "function",
        )
        for _, entry in sorted(pending.items())
    )


def _usage(usage: _Usage | None) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        input_tokens=usage.prompt_tokens, output_tokens=usage.completion_tokens
    )


def _created_at(created: int | None) -> str:
    if created is None:
        return utc_now_iso()
    return datetime.fromtimestamp(created, UTC).isoformat()

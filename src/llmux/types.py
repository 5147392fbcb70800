"""Provider-agnostic request, response, and conversation types."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from llmux.errors import InvalidRequestError


class Role(StrEnum):
    """Conversation roles understood by every adapter."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is passed through exactly as the adapter decoded it.
    """

    name: str
    arguments: Any = field(default_factory=dict)
    #: Provider-assigned call id (OpenAI-compatible backends only).
    id: str | None = None
    type: str = "function"


@dataclass(frozen=True)
class Message:
    """A single conversation turn.

    Order of messages in a request is chronological and preserved verbatim by
    every adapter.
    """

    role: str
    content: str = ""
    thinking: str | None = None
    #: Base64 payloads or URLs, depending on what the backend accepts.
    images: tuple[str, ...] | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    #: Name of the tool whose result this message carries (role="tool").
    tool_name: str | None = None
    #: Id of the call this message answers (role="tool", OpenAI-compatible).
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        """Freeze list inputs so the message stays immutable."""
        if isinstance(self.role, Role):
            object.__setattr__(self, "role", self.role.value)
        if self.images is not None and not isinstance(self.images, tuple):
            object.__setattr__(self, "images", tuple(self.images))
        if self.tool_calls is not None and not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool(
        cls, content: str, tool_name: str, *, tool_call_id: str | None = None
    ) -> Message:
        return cls(
            role=Role.TOOL,
            content=content,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
        )

    def with_images(self, images: list[str] | tuple[str, ...]) -> Message:
        return replace(self, images=tuple(images))

    def with_thinking(self, thinking: str) -> Message:
        return replace(self, thinking=thinking)

    def with_tool_calls(
        self, tool_calls: list[ToolCall] | tuple[ToolCall, ...]
    ) -> Message:
        return replace(self, tool_calls=tuple(tool_calls))


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call, described by a JSON-schema object."""

    name: str
    description: str | None = None
    #: JSON-schema object: ``{"type": "object", "properties": {...}, "required": [...]}``.
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    type: str = "function"

    @classmethod
    def function(
        cls,
        name: str,
        *,
        description: str | None = None,
        properties: dict[str, Any] | None = None,
        required: list[str] | None = None,
    ) -> ToolDefinition:
        """Build a definition from named properties and a required subset."""
        props = dict(properties or {})
        req = list(required or [])
        unknown = [r for r in req if r not in props]
        if unknown:
            raise InvalidRequestError(
                f"required names unknown properties: {unknown}",
                field="tools.parameters.required",
            )
        parameters: dict[str, Any] = {"type": "object", "properties": props}
        if req:
            parameters["required"] = req
        return cls(name=name, description=description, parameters=parameters)

    def to_wire(self) -> dict[str, Any]:
        """Return the ``{"type", "function": {...}}`` shape shared by backends."""
        function: dict[str, Any] = {"name": self.name, "parameters": self.parameters}
        if self.description is not None:
            function["description"] = self.description
        return {"type": self.type, "function": function}


@dataclass(frozen=True)
class DispatchRequest:
    """An immutable chat request addressed to one provider.

    Optional fields left as ``None`` are filled from ``DispatchConfig`` (or the
    adapter's ``TransportConfig``) at dispatch time; the caller's instance is
    never modified.
    """

    provider: str
    model: str
    messages: tuple[Message, ...]
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: tuple[str, ...] | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    seed: int | None = None
    #: Per-attempt timeout in seconds.
    timeout_s: float | None = None
    #: Total transport attempts per provider (first try included).
    retry_count: int | None = None
    tools: tuple[ToolDefinition, ...] | None = None
    #: ``False`` disables provider fallback for this request only.
    fallback: bool | None = None

    def __post_init__(self) -> None:
        """Freeze sequence inputs so the request is a true value."""
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if self.stop is not None and not isinstance(self.stop, tuple):
            object.__setattr__(self, "stop", tuple(self.stop))
        if self.tools is not None and not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    def with_stream(self, stream: bool = True) -> DispatchRequest:
        return replace(self, stream=stream)

    def with_temperature(self, temperature: float) -> DispatchRequest:
        return replace(self, temperature=temperature)

    def with_max_tokens(self, max_tokens: int) -> DispatchRequest:
        return replace(self, max_tokens=max_tokens)

    def with_top_p(self, top_p: float) -> DispatchRequest:
        return replace(self, top_p=top_p)

    def with_stop(self, stop: list[str] | tuple[str, ...]) -> DispatchRequest:
        return replace(self, stop=tuple(stop))

    def with_tools(
        self, tools: list[ToolDefinition] | tuple[ToolDefinition, ...]
    ) -> DispatchRequest:
        return replace(self, tools=tuple(tools))


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting as reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class DispatchResponse:
    """Normalized result of the one attempt that succeeded."""

    content: str
    provider: str
    model: str
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    request_id: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    #: Provider-reported generation time, or wall time when the provider is silent.
    total_duration_ms: float | None = None
    thinking: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def generation_speed(self) -> float | None:
        """Output tokens per second, when both tokens and duration are known."""
        if self.usage is None or not self.total_duration_ms:
            return None
        return self.usage.output_tokens / (self.total_duration_ms / 1000.0)

    def to_message(self) -> Message:
        """Return the response as an assistant turn for the next request."""
        return Message(
            role=Role.ASSISTANT,
            content=self.content,
            thinking=self.thinking,
            tool_calls=self.tool_calls or None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.usage is not None:
            data["usage"]["total_tokens"] = self.usage.total_tokens
        return data


@dataclass(frozen=True)
class Delta:
    """One incremental fragment of a streamed response.

    The last fragment of a successful stream has ``done=True`` and may carry
    the finish reason and usage; earlier fragments carry content only.
    """

    content: str = ""
    done: bool = False
    provider: str | None = None
    thinking: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    usage: TokenUsage | None = None

"""llmux: one chat contract over many LLM backends.

Public API:
    - Dispatcher: adapter registry, retry-then-fallback, streaming
    - DispatchRequest / DispatchResponse / Delta: the unified contract
    - DispatchConfig / TransportConfig: dispatch defaults and transport policy
    - create_dispatcher(): a Dispatcher wired with the built-in adapters
"""

from __future__ import annotations

import logging
import os

from llmux._version import __version__
from llmux.classify import Disposition, classify
from llmux.config import DispatchConfig
from llmux.dispatcher import Dispatcher
from llmux.errors import (
    APIError,
    ConfigurationError,
    InternalError,
    InvalidRequestError,
    LlmuxError,
    ModelNotAvailableError,
    RateLimitError,
    SerializationError,
    StreamInterruptedError,
    TransportError,
    UnsupportedProviderError,
)
from llmux.providers import (
    DashScopeAdapter,
    MockAdapter,
    OllamaAdapter,
    ProviderAdapter,
)
from llmux.records import CallRecord
from llmux.transport import ClientMetrics, TransportConfig
from llmux.types import (
    Delta,
    DispatchRequest,
    DispatchResponse,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("llmux").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


def create_dispatcher(
    config: DispatchConfig | None = None, *, use_mock: bool = False
) -> Dispatcher:
    """Build a Dispatcher with the built-in adapters registered.

    Ollama is always registered; DashScope only when ``DASHSCOPE_API_KEY`` is
    set. With ``use_mock=True`` both ids are served by ``MockAdapter``.

    Args:
        config: Dispatch defaults; read from ``LLMUX_*`` variables when omitted.
        use_mock: Register deterministic mock adapters instead of real ones.

    Example:
        async with create_dispatcher() as dispatcher:
            response = await dispatcher.dispatch(
                DispatchRequest("ollama", "llama3", [Message.user("hi")])
            )
            print(response.content)
    """
    dispatcher = Dispatcher(config or DispatchConfig.from_env())
    if use_mock:
        dispatcher.register_many(
            {"ollama": MockAdapter("ollama"), "dashscope": MockAdapter("dashscope")}
        )
        return dispatcher

    dispatcher.register("ollama", OllamaAdapter())
    if os.environ.get("DASHSCOPE_API_KEY"):
        dispatcher.register("dashscope", DashScopeAdapter())
    else:
        logger.debug("DASHSCOPE_API_KEY not set; dashscope adapter not registered")
    return dispatcher


__all__ = [
    "APIError",
    "CallRecord",
    "ClientMetrics",
    "ConfigurationError",
    "DashScopeAdapter",
    "Delta",
    "DispatchConfig",
    "DispatchRequest",
    "DispatchResponse",
    "Dispatcher",
    "Disposition",
    "InternalError",
    "InvalidRequestError",
    "LlmuxError",
    "Message",
    "MockAdapter",
    "ModelNotAvailableError",
    "OllamaAdapter",
    "ProviderAdapter",
    "RateLimitError",
    "Role",
    "SerializationError",
    "StreamInterruptedError",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "TransportConfig",
    "TransportError",
    "UnsupportedProviderError",
    "__version__",
    "classify",
    "create_dispatcher",
]

"""Provider adapters."""

from .base import ProviderAdapter
from .dashscope import DashScopeAdapter
from .mock import MockAdapter
from .ollama import OllamaAdapter

__all__ = [
    "DashScopeAdapter",
    "MockAdapter",
    "OllamaAdapter",
    "ProviderAdapter",
]

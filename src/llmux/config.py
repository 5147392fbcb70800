"""Configuration: process-wide dispatch defaults and environment loading."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from types import MappingProxyType

from dotenv import load_dotenv

from llmux.errors import ConfigurationError

load_dotenv()

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class DispatchConfig:
    """Immutable defaults applied when a request omits a field.

    Request-level values always win. ``timeout_s`` and ``retry_count`` left as
    *None* defer to each adapter's ``TransportConfig``.

    Example:
        config = DispatchConfig(fallback_providers=("dashscope",))
    """

    #: Per-attempt timeout in seconds.
    timeout_s: float | None = None
    #: Total transport attempts per provider (first try included).
    retry_count: int | None = None
    temperature: float = 0.7
    enable_fallback: bool = True
    #: Providers tried, in order, after the requested one fails retryably.
    fallback_providers: tuple[str, ...] = ()
    #: Model substituted when a fallback candidate is tried, keyed by provider.
    fallback_models: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate and normalize the fallback list."""
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="Use None to defer to each adapter's request timeout.",
            )
        if self.retry_count is not None and self.retry_count < 1:
            raise ConfigurationError(
                f"retry_count must be >= 1, got {self.retry_count}",
                hint="retry_count counts the first try; use 1 to disable retries.",
            )
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(
                f"temperature must be within [0, 2], got {self.temperature}"
            )

        providers = self.fallback_providers
        if isinstance(providers, str):
            providers = (providers,)
        deduped: list[str] = []
        for provider in providers:
            if not provider:
                raise ConfigurationError("fallback_providers contains an empty id")
            if provider not in deduped:
                deduped.append(provider)
        object.__setattr__(self, "fallback_providers", tuple(deduped))
        object.__setattr__(
            self, "fallback_models", MappingProxyType(dict(self.fallback_models))
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatchConfig:
        """Build a config from ``LLMUX_*`` environment variables.

        Unset variables keep the dataclass defaults.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}

        if raw := env.get("LLMUX_TIMEOUT_S", "").strip():
            kwargs["timeout_s"] = _parse_number(raw, "LLMUX_TIMEOUT_S", float)
        if raw := env.get("LLMUX_RETRY_COUNT", "").strip():
            kwargs["retry_count"] = _parse_number(raw, "LLMUX_RETRY_COUNT", int)
        if raw := env.get("LLMUX_TEMPERATURE", "").strip():
            kwargs["temperature"] = _parse_number(raw, "LLMUX_TEMPERATURE", float)
        if raw := env.get("LLMUX_ENABLE_FALLBACK", "").strip():
            kwargs["enable_fallback"] = _parse_bool(raw, "LLMUX_ENABLE_FALLBACK")
        if raw := env.get("LLMUX_FALLBACK_PROVIDERS", "").strip():
            kwargs["fallback_providers"] = tuple(
                p.strip() for p in raw.split(",") if p.strip()
            )
        return cls(**kwargs)  # type: ignore[arg-type]


def _parse_number(raw: str, name: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be a {kind.__name__}, got {raw!r}"
        ) from exc


def _parse_bool(raw: str, name: str) -> bool:
    value = raw.lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(
        f"{name} must be a boolean, got {raw!r}",
        hint="Use one of: 1/0, true/false, yes/no, on/off.",
    )

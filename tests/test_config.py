"""DispatchConfig validation and environment loading; call-log records."""

from __future__ import annotations

import pytest

from llmux.config import DispatchConfig
from llmux.errors import APIError, ConfigurationError, TransportError
from llmux.records import CallRecord
from llmux.types import DispatchResponse, TokenUsage

pytestmark = pytest.mark.unit


def test_defaults() -> None:
    config = DispatchConfig()

    assert config.timeout_s is None
    assert config.retry_count is None
    assert config.temperature == 0.7
    assert config.enable_fallback is True
    assert config.fallback_providers == ()
    assert dict(config.fallback_models) == {}


def test_fallback_providers_are_deduplicated_in_order() -> None:
    config = DispatchConfig(
        fallback_providers=["b", "a", "b", "c", "a"]  # type: ignore[arg-type]
    )

    assert config.fallback_providers == ("b", "a", "c")


def test_fallback_models_cannot_be_mutated_after_construction() -> None:
    source = {"dashscope": "qwen-plus"}
    config = DispatchConfig(fallback_models=source)
    source["dashscope"] = "qwen-max"

    assert config.fallback_models["dashscope"] == "qwen-plus"
    with pytest.raises(TypeError):
        config.fallback_models["ollama"] = "llama3"  # type: ignore[index]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"timeout_s": 0},
        {"retry_count": 0},
        {"temperature": 2.1},
        {"fallback_providers": ("ok", "")},
    ],
)
def test_invalid_values_raise_configuration_error(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        DispatchConfig(**kwargs)  # type: ignore[arg-type]


def test_from_env_reads_all_fields() -> None:
    config = DispatchConfig.from_env(
        {
            "LLMUX_TIMEOUT_S": "12.5",
            "LLMUX_RETRY_COUNT": "4",
            "LLMUX_TEMPERATURE": "0.2",
            "LLMUX_ENABLE_FALLBACK": "off",
            "LLMUX_FALLBACK_PROVIDERS": " dashscope, ollama ,,dashscope ",
        }
    )

    assert config.timeout_s == 12.5
    assert config.retry_count == 4
    assert config.temperature == 0.2
    assert config.enable_fallback is False
    assert config.fallback_providers == ("dashscope", "ollama")


def test_from_env_without_variables_uses_defaults(monkeypatch) -> None:
    assert DispatchConfig.from_env() == DispatchConfig()

    monkeypatch.setenv("LLMUX_RETRY_COUNT", "2")
    assert DispatchConfig.from_env().retry_count == 2


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LLMUX_TIMEOUT_S", "soon"),
        ("LLMUX_RETRY_COUNT", "1.5"),
        ("LLMUX_ENABLE_FALLBACK", "maybe"),
    ],
)
def test_from_env_rejects_malformed_values(name: str, value: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        DispatchConfig.from_env({name: value})

    assert name in str(exc_info.value)


# =============================================================================
# Call records
# =============================================================================


def test_record_from_response() -> None:
    response = DispatchResponse(
        content="hi",
        provider="ollama",
        model="llama3",
        usage=TokenUsage(input_tokens=4, output_tokens=9),
        total_duration_ms=321.0,
    )

    record = CallRecord.from_response(response, duration_ms=400.0)

    assert record.to_dict() == {
        "model_id": "ollama:llama3",
        "status_code": 200,
        "duration_ms": 321.0,
        "tokens_output": 9,
        "error_message": None,
        "created_at": record.created_at,
        "id": record.id,
    }
    assert record.ok


def test_record_from_error_uses_provider_status_or_zero() -> None:
    http = CallRecord.from_error(
        APIError("not found", status_code=404),
        provider="dashscope",
        model="qwen-plus",
        duration_ms=10.0,
    )
    network = CallRecord.from_error(
        TransportError("network error"),
        provider="ollama",
        model="llama3",
        duration_ms=5.0,
    )
    bare = CallRecord.from_error(
        RuntimeError(), provider="ollama", model="llama3", duration_ms=1.0
    )

    assert (http.status_code, http.error_message) == (404, "not found")
    assert network.status_code == 0
    assert bare.error_message == "RuntimeError"
    assert not http.ok
    assert http.id != network.id

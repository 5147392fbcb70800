"""Shared helpers for adapter wire translation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from llmux.errors import SerializationError

if TYPE_CHECKING:
    from llmux.types import DispatchRequest

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_wire(
    model: type[ModelT], data: Any, *, provider: str, phase: str = "decode"
) -> ModelT:
    """Validate a decoded provider body against its wire model."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SerializationError(
            f"{provider} returned an unexpected body: {exc.error_count()} "
            f"validation error(s)",
            retryable=False,
            provider=provider,
            phase=phase,
            hint="The provider's wire format changed or the endpoint is wrong.",
        ) from exc


def decode_json_line(line: str, *, provider: str) -> Any:
    """Decode one streamed JSON document."""
    try:
        return json.loads(line)
    except json.JSONDecodeError as exc:
        raise SerializationError(
            f"{provider} streamed a non-JSON chunk: {line[:100]!r}",
            retryable=False,
            provider=provider,
            phase="stream",
        ) from exc


def drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def tools_to_wire(request: DispatchRequest) -> list[dict[str, Any]] | None:
    if not request.tools:
        return None
    return [tool.to_wire() for tool in request.tools]

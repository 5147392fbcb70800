"""Call-log records handed to persistence observers.

One ``CallRecord`` is produced per attempt, successful or not, in exactly the
shape the call-log store expects.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any
import uuid

from llmux.errors import APIError
from llmux.types import utc_now_iso

if TYPE_CHECKING:
    from llmux.types import DispatchResponse


@dataclass(frozen=True)
class CallRecord:
    """A single call-log row."""

    #: ``"<provider>:<model>"``.
    model_id: str
    #: 200 on success; the provider status on failure, or 0 when none was received.
    status_code: int
    duration_ms: float
    tokens_output: int | None = None
    error_message: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @classmethod
    def from_response(
        cls, response: DispatchResponse, *, duration_ms: float
    ) -> CallRecord:
        return cls(
            model_id=f"{response.provider}:{response.model}",
            status_code=200,
            duration_ms=response.total_duration_ms or duration_ms,
            tokens_output=response.usage.output_tokens if response.usage else None,
        )

    @classmethod
    def from_error(
        cls, exc: BaseException, *, provider: str, model: str, duration_ms: float
    ) -> CallRecord:
        status = exc.status_code if isinstance(exc, APIError) else None
        return cls(
            model_id=f"{provider}:{model}",
            status_code=status or 0,
            duration_ms=duration_ms,
            error_message=str(exc) or type(exc).__name__,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

"""Failure classifier: decide between falling back and failing.

The classifier is a pure function of the exception and the metadata it
carries. It never looks at attempt counts; exhausting transport attempts is
the adapter's concern and has already happened by the time an error reaches
the dispatcher.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum

from llmux._http import OVERLOAD_STATUS_CODES
from llmux.errors import (
    APIError,
    LlmuxError,
    RateLimitError,
    SerializationError,
    TransportError,
)
from llmux.retry import _is_transient_network_error


class Disposition(StrEnum):
    """What the dispatcher does with a failed attempt."""

    RETRY_NEXT_PROVIDER = "retry_next_provider"
    FAIL = "fail"


def classify(exc: BaseException) -> Disposition:
    """Map a failed attempt to a ``Disposition``.

    - ``TransportError`` / ``RateLimitError``: try the next provider.
    - ``APIError`` flagged retryable, or carrying an overload status
      (429/503/529): try the next provider.
    - ``SerializationError``, other ``APIError``, configuration and
      validation errors: fail.
    - Raw network failures and timeouts from third-party adapters: try the
      next provider.
    """
    if isinstance(exc, asyncio.CancelledError):
        return Disposition.FAIL
    if isinstance(exc, SerializationError):
        return Disposition.FAIL
    if isinstance(exc, (TransportError, RateLimitError)):
        return Disposition.RETRY_NEXT_PROVIDER
    if isinstance(exc, APIError):
        if exc.retryable is True or exc.status_code in OVERLOAD_STATUS_CODES:
            return Disposition.RETRY_NEXT_PROVIDER
        return Disposition.FAIL
    if isinstance(exc, LlmuxError):
        return Disposition.FAIL
    if _is_transient_network_error(exc):
        return Disposition.RETRY_NEXT_PROVIDER
    return Disposition.FAIL

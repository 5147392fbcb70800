"""HTTP status helpers shared by the transport, error mapping, and classifier."""

from __future__ import annotations

# Status codes that mean "this provider is overloaded, try another one".
OVERLOAD_STATUS_CODES: frozenset[int] = frozenset({429, 503, 529})


def is_server_error(status_code: int) -> bool:
    """Return True for 5xx statuses, the only ones retried inside an adapter."""
    return 500 <= status_code <= 599

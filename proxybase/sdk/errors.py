"""
ProxyBase backend client exceptions.
"""

from __future__ import annotations

from typing import Any, Optional


class BackendError(RuntimeError):
    """Base class for failures talking to the ProxyBase backend."""

    kind = "backend_error"
    retryable = False

    def __init__(
        self,
        detail: str,
        *,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        payload: Optional[Any] = None,
    ) -> None:
        self.detail = detail
        self.status_code = status_code
        self.path = path
        self.payload = payload
        status_hint = f" (status={status_code})" if status_code is not None else ""
        path_hint = f" [{path}]" if path else ""
        super().__init__(f"{detail}{status_hint}{path_hint}")


class BackendUnauthorizedError(BackendError):
    """API key missing, unknown or revoked."""

    kind = "unauthorized"


class BackendNotFoundError(BackendError):
    """Order, package or route does not exist."""

    kind = "not_found"


class BackendInvalidError(BackendError):
    """Rejected input, or a response that does not match the expected entity."""

    kind = "invalid"

    def __init__(self, detail: str, *, field: Optional[str] = None, **kwargs: Any) -> None:
        self.field = field
        super().__init__(detail, **kwargs)


class BackendTransientError(BackendError):
    """Temporary failure (timeouts, throttling, 5xx)."""

    kind = "transient"
    retryable = True

    def __init__(self, detail: str, *, cause: Optional[str] = None, **kwargs: Any) -> None:
        self.cause = cause or detail
        super().__init__(detail, **kwargs)


class BackendUnreachableError(BackendTransientError):
    """The backend could not be contacted at all."""

    kind = "unreachable"

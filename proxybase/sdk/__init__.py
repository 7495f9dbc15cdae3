"""
ProxyBase SDK public exports.
"""

from proxybase.sdk.client import ProxyBaseClient
from proxybase.sdk.errors import (
    BackendError,
    BackendInvalidError,
    BackendNotFoundError,
    BackendTransientError,
    BackendUnauthorizedError,
    BackendUnreachableError,
)

__all__ = [
    "ProxyBaseClient",
    "BackendError",
    "BackendInvalidError",
    "BackendNotFoundError",
    "BackendTransientError",
    "BackendUnauthorizedError",
    "BackendUnreachableError",
]

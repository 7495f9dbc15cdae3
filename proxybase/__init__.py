"""
ProxyBase MCP: proxy procurement tools for AI agents over the Model Context Protocol.
"""

from proxybase.sdk import (
    BackendError,
    BackendInvalidError,
    BackendNotFoundError,
    BackendTransientError,
    BackendUnauthorizedError,
    BackendUnreachableError,
    ProxyBaseClient,
)
from proxybase.version import __version__

__all__ = [
    "__version__",
    "ProxyBaseClient",
    "BackendError",
    "BackendInvalidError",
    "BackendNotFoundError",
    "BackendTransientError",
    "BackendUnauthorizedError",
    "BackendUnreachableError",
]

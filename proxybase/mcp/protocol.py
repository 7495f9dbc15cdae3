"""
ProxyBase MCP Protocol Constants & Errors
"""

from typing import Any, Dict, Optional

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "proxybase-mcp"

# Standard JSON-RPC Error Codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# ProxyBase Specific Error Codes
REQUEST_TIMEOUT = -32000
BACKEND_UNAVAILABLE = -32000
BACKEND_ERROR = -32001


class RpcError(Exception):
    """An error that is reported to the caller as a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")

    def to_error_object(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def invalid_params(message: str, **data: Any) -> RpcError:
    return RpcError(INVALID_PARAMS, message, data or None)

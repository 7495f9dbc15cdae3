"""
Line-delimited JSON-RPC 2.0 codec for the stdio transport.

One JSON object per line, UTF-8, terminated by a single newline. Batches are
not supported.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .protocol import INVALID_REQUEST, JSONRPC_VERSION, PARSE_ERROR, RpcError

logger = logging.getLogger("ProxyBase.mcp.codec")

ALLOWED_KEYS = frozenset({"jsonrpc", "id", "method", "params", "result", "error"})

RequestId = Union[str, int]


@dataclass(frozen=True)
class Request:
    id: RequestId
    method: str
    params: Any = None


@dataclass(frozen=True)
class Notification:
    method: str
    params: Any = None


@dataclass(frozen=True)
class Response:
    id: Optional[RequestId]
    result: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorResponse:
    id: Optional[RequestId]
    error: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc_error(cls, msg_id: Optional[RequestId], exc: RpcError) -> "ErrorResponse":
        return cls(id=msg_id, error=exc.to_error_object())


Message = Union[Request, Notification, Response, ErrorResponse]


class DecodeError(RpcError):
    """A line that cannot be turned into a JSON-RPC message."""

    def __init__(
        self,
        code: int,
        message: str,
        msg_id: Optional[RequestId] = None,
        notification: bool = False,
    ):
        self.msg_id = msg_id
        # Malformed notifications are dropped, never answered.
        self.notification = notification
        super().__init__(code, message)


def _valid_id(value: Any) -> bool:
    # bool is an int subclass but never a legal id
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def decode(line: Union[str, bytes]) -> Message:
    """Parse one transport line into a Message, raising DecodeError."""
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(PARSE_ERROR, f"Parse error: invalid UTF-8 ({exc.reason})") from exc

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise DecodeError(PARSE_ERROR, f"Parse error: {exc.msg} at column {exc.colno}") from exc

    if not isinstance(payload, dict):
        raise DecodeError(PARSE_ERROR, "Parse error: message must be a JSON object")
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise DecodeError(PARSE_ERROR, 'Parse error: missing or invalid "jsonrpc": "2.0"')

    raw_id = payload.get("id")
    echo_id = raw_id if _valid_id(raw_id) else None
    is_notification = raw_id is None and "method" in payload

    def invalid(message: str) -> DecodeError:
        return DecodeError(INVALID_REQUEST, f"Invalid Request: {message}", echo_id, is_notification)

    extra = sorted(set(payload) - ALLOWED_KEYS)
    if extra:
        raise invalid(f"unexpected fields {extra}")
    if raw_id is not None and not _valid_id(raw_id):
        raise invalid("id must be a string or integer")

    if "method" in payload:
        method = payload["method"]
        if not isinstance(method, str) or not method:
            raise invalid("method must be a non-empty string")
        if "result" in payload or "error" in payload:
            raise invalid("request carries result/error")
        params = payload.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            raise invalid("params must be an object or array")
        if raw_id is None:
            return Notification(method=method, params=params)
        return Request(id=raw_id, method=method, params=params)

    has_result = "result" in payload
    has_error = "error" in payload
    if has_result and has_error:
        raise invalid("response has both result and error")
    if has_result:
        return Response(id=echo_id, result=payload["result"])
    if has_error:
        error = payload["error"]
        if not isinstance(error, dict):
            raise invalid("error must be an object")
        return ErrorResponse(id=echo_id, error=error)
    raise invalid("missing method")


def encode(message: Message, ensure_ascii: bool = False) -> str:
    """Serialize a Message into one newline-terminated line."""
    body: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if isinstance(message, Response):
        body["id"] = message.id
        body["result"] = message.result
    elif isinstance(message, ErrorResponse):
        body["id"] = message.id
        body["error"] = message.error
    elif isinstance(message, Request):
        body["id"] = message.id
        body["method"] = message.method
        if message.params is not None:
            body["params"] = message.params
    elif isinstance(message, Notification):
        body["method"] = message.method
        if message.params is not None:
            body["params"] = message.params
    else:
        raise TypeError(f"Cannot encode {type(message).__name__} as JSON-RPC")
    # Compact separators and escaped control chars keep the message on one line.
    return json.dumps(body, ensure_ascii=ensure_ascii, separators=(",", ":")) + "\n"

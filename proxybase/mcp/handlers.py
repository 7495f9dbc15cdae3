import logging
from typing import Any, Callable, Dict, Optional

from proxybase.version import __version__

from .codec import Notification, Request
from .protocol import (
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PROTOCOL_VERSION,
    SERVER_NAME,
    RpcError,
    invalid_params,
)
from .registry import ToolRegistry
from .state import Lifecycle, SessionState

logger = logging.getLogger("ProxyBase.mcp.handlers")

# Methods that must run on the reader thread so lifecycle changes are applied
# before any later line is looked at.
INLINE_METHODS = frozenset({"initialize", "ping", "tools/list"})
PRE_INITIALIZE_METHODS = frozenset({"initialize", "ping"})


class Dispatcher:
    """
    Resolves decoded JSON-RPC messages to handlers.

    Requests return a result object or raise RpcError; notifications never
    produce output.
    """

    def __init__(self, registry: ToolRegistry, session: Optional[SessionState] = None):
        self.registry = registry
        self.session = session or SessionState()
        self._methods: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "initialize": self.handle_initialize,
            "ping": self.handle_ping,
            "tools/list": self.handle_list_tools,
            "tools/call": self.handle_call_tool,
        }
        self._notifications: Dict[str, Callable[[Any], None]] = {
            "notifications/initialized": self._on_initialized,
            "notifications/cancelled": self._on_cancelled,
        }

    def runs_inline(self, request: Request) -> bool:
        return request.method in INLINE_METHODS or request.method not in self._methods

    def handle_request(self, request: Request) -> Dict[str, Any]:
        handler = self._methods.get(request.method)
        if handler is None:
            raise RpcError(METHOD_NOT_FOUND, f"Method not found: {request.method}")

        if (
            self.session.lifecycle == Lifecycle.AWAITING_INITIALIZE
            and request.method not in PRE_INITIALIZE_METHODS
        ):
            raise RpcError(INVALID_REQUEST, "server not initialized: send initialize first")

        params = request.params
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise invalid_params(f"{request.method} params must be an object")
        return handler(params)

    def handle_notification(self, notification: Notification) -> None:
        handler = self._notifications.get(notification.method)
        if handler is None:
            logger.debug("Ignoring notification: %s", notification.method)
            return
        handler(notification.params)

    def handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Protocol negotiation. A version mismatch is logged, never fatal."""
        requested = params.get("protocolVersion")
        if requested != PROTOCOL_VERSION:
            logger.warning(
                "Client requested protocol version %r; continuing with %s",
                requested,
                PROTOCOL_VERSION,
            )

        client_info = params.get("clientInfo")
        capabilities = params.get("capabilities")
        self.session.mark_ready(
            PROTOCOL_VERSION,
            client_info if isinstance(client_info, dict) else {},
            capabilities if isinstance(capabilities, dict) else {},
        )
        if isinstance(client_info, dict) and client_info.get("name"):
            logger.info(
                "Initialized session for client %s %s",
                client_info.get("name"),
                client_info.get("version", ""),
            )

        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    def handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def handle_list_tools(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": self.registry.list_tools()}

    def handle_call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name.strip():
            raise invalid_params("tools/call requires a non-empty string name")
        name = name.strip()
        if name not in self.registry:
            raise invalid_params(f"unknown tool: {name}", tool=name)

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise invalid_params("tools/call arguments must be an object", tool=name)
        return self.registry.call(name, arguments)

    def _on_initialized(self, params: Any) -> None:
        if self.session.lifecycle == Lifecycle.AWAITING_INITIALIZE:
            logger.warning("Received notifications/initialized before initialize")
            return
        self.session.mark_client_initialized()
        logger.info("Client initialized connection")

    def _on_cancelled(self, params: Any) -> None:
        request_id = params.get("requestId") if isinstance(params, dict) else None
        logger.info("Client cancelled request %r; in-flight calls run to completion", request_id)

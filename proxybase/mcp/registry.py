"""
Tool registry: static name -> {schema, handler} table.

Validation runs before any handler is invoked, so malformed calls never cost
a backend round trip. Backend failures are translated into JSON-RPC errors
here, which keeps the SDK free of protocol concerns.
"""

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional

from proxybase.core.types import API_KEY_PREFIX, DEFAULT_PAY_CURRENCY
from proxybase.sdk.client import ProxyBaseClient
from proxybase.sdk.errors import (
    BackendError,
    BackendInvalidError,
    BackendTransientError,
)

from .definitions import (
    DESTRUCTIVE_TOOLS,
    JSON_SCHEMA_DRAFT_07,
    NON_IDEMPOTENT_TOOLS,
    READ_ONLY_TOOLS,
    TOOL_SPECS,
    ToolSpec,
)
from .protocol import BACKEND_ERROR, BACKEND_UNAVAILABLE, RpcError, invalid_params
from .state import OrderStatusTracker

logger = logging.getLogger("ProxyBase.mcp.registry")

ToolHandler = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class ToolDefinition:
    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def read_only(self) -> bool:
        return self.name in READ_ONLY_TOOLS

    def describe(self) -> Dict[str, Any]:
        schema = self.spec.input_schema()
        schema["$schema"] = JSON_SCHEMA_DRAFT_07
        return {
            "name": self.name,
            "description": self.spec.description,
            "inputSchema": schema,
            "annotations": {
                "readOnlyHint": self.read_only,
                "destructiveHint": self.name in DESTRUCTIVE_TOOLS,
                "idempotentHint": self.name not in NON_IDEMPOTENT_TOOLS,
                "openWorldHint": True,
            },
        }

    def validate(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check arguments against the declared parameters.

        Order: required presence, then string types, then the local api_key
        format check. Unknown arguments are dropped, not rejected. Returns only
        the declared arguments the caller actually supplied.
        """
        for param in self.spec.params:
            if param.required and arguments.get(param.name) is None:
                raise invalid_params(
                    f"missing required argument: {param.name}",
                    tool=self.name,
                    field=param.name,
                )

        cleaned: Dict[str, Any] = {}
        for param in self.spec.params:
            value = arguments.get(param.name)
            if value is None:
                continue
            if param.type == "string" and not isinstance(value, str):
                raise invalid_params(
                    f"argument '{param.name}' must be a string",
                    tool=self.name,
                    field=param.name,
                )
            cleaned[param.name] = value

        api_key = cleaned.get("api_key")
        if api_key is not None and not api_key.startswith(API_KEY_PREFIX):
            raise invalid_params(
                f"invalid api_key: expected a ProxyBase key starting with '{API_KEY_PREFIX}'",
                tool=self.name,
                field="api_key",
            )

        ignored = sorted(set(arguments) - {p.name for p in self.spec.params})
        if ignored:
            logger.debug("Ignoring unknown arguments for %s: %s", self.name, ignored)
        return cleaned

    def invoke(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return self.handler(arguments)


def map_backend_error(exc: BackendError) -> RpcError:
    """Translate a backend failure into the JSON-RPC error surfaced to the caller."""
    if isinstance(exc, BackendTransientError):
        data: Dict[str, Any] = {"kind": exc.kind, "cause": exc.cause}
        if exc.status_code is not None:
            data["status"] = exc.status_code
        return RpcError(BACKEND_UNAVAILABLE, f"ProxyBase backend unavailable: {exc.detail}", data)

    data = {"kind": exc.kind, "status": exc.status_code, "detail": exc.detail}
    if isinstance(exc, BackendInvalidError) and exc.field:
        data["field"] = exc.field
    return RpcError(BACKEND_ERROR, f"ProxyBase backend error: {exc.detail}", data)


def tool_result(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap a backend payload as an MCP CallToolResult."""
    return {
        "content": [{"type": "text", "text": json.dumps(payload, indent=2, ensure_ascii=False)}],
        "structuredContent": payload,
        "isError": False,
    }


class ToolRegistry:
    """Immutable tool table, built once at startup."""

    def __init__(self, definitions: Iterable[ToolDefinition]):
        table: Dict[str, ToolDefinition] = {}
        for definition in definitions:
            if definition.name in table:
                raise ValueError(f"Duplicate tool name: {definition.name}")
            table[definition.name] = definition
        self._tools = MappingProxyType(table)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition:
        definition = self._tools.get(name)
        if definition is None:
            raise invalid_params(f"unknown tool: {name}", tool=name)
        return definition

    def list_tools(self) -> List[Dict[str, Any]]:
        return [definition.describe() for definition in self._tools.values()]

    def call(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        definition = self.get(name)
        validated = definition.validate(arguments)
        try:
            payload = definition.invoke(validated)
        except BackendError as exc:
            logger.warning("Tool %s failed against backend: %s", name, exc)
            raise map_backend_error(exc) from exc
        return tool_result(payload)


class ProxyBaseTools:
    """Tool handlers bound to one backend client."""

    def __init__(self, client: ProxyBaseClient, tracker: Optional[OrderStatusTracker] = None):
        self.client = client
        self.tracker = tracker or OrderStatusTracker()

    def _ensure_supported_currency(self, api_key: str, currency: str) -> None:
        currencies = self.client.list_currencies(api_key)
        if not currencies.supports(currency):
            raise BackendInvalidError(
                f"Invalid pay_currency: '{currency}'. Supported currencies: "
                f"{', '.join(currencies.currencies)}",
                field="pay_currency",
            )

    def register_agent(self, args: Dict[str, Any]) -> Dict[str, Any]:
        agent = self.client.register_agent()
        logger.info("Registered agent %s", agent.agent_id)
        return agent.to_payload()

    def list_packages(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.list_packages(args["api_key"]).to_payload()

    def list_currencies(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.client.list_currencies(args["api_key"]).to_payload()

    def create_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        api_key = args["api_key"]
        if "pay_currency" in args:
            self._ensure_supported_currency(api_key, args["pay_currency"])
        invoice = self.client.create_order(
            api_key,
            args["package_id"],
            pay_currency=args.get("pay_currency", DEFAULT_PAY_CURRENCY),
            callback_url=args.get("callback_url"),
        )
        logger.info("Created order %s (status=%s)", invoice.order_id, invoice.status.value)
        return invoice.to_payload()

    def check_order_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = self.client.check_order_status(args["api_key"], args["order_id"])
        return self.tracker.observe(snapshot).to_payload()

    def topup_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        api_key = args["api_key"]
        if "pay_currency" in args:
            self._ensure_supported_currency(api_key, args["pay_currency"])
        invoice = self.client.topup_order(
            api_key,
            args["order_id"],
            args["package_id"],
            pay_currency=args.get("pay_currency"),
        )
        logger.info("Created top-up invoice for order %s", invoice.order_id)
        return invoice.to_payload()


def build_registry(client: ProxyBaseClient, tracker: Optional[OrderStatusTracker] = None) -> ToolRegistry:
    tools = ProxyBaseTools(client, tracker)
    return ToolRegistry(
        ToolDefinition(spec=spec, handler=getattr(tools, spec.name))
        for spec in TOOL_SPECS
    )

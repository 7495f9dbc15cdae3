from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple

from proxybase.core.types import API_KEY_PREFIX, DEFAULT_PAY_CURRENCY

JSON_SCHEMA_DRAFT_07 = "http://json-schema.org/draft-07/schema#"


@dataclass(frozen=True)
class ToolParam:
    name: str
    description: str
    required: bool = False
    type: str = "string"
    default: Optional[Any] = None

    def to_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: Tuple[ToolParam, ...] = ()

    @property
    def required(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.params if p.required)

    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.params},
            "required": list(self.required),
        }


_API_KEY = ToolParam(
    "api_key",
    f"Your ProxyBase API key (starts with {API_KEY_PREFIX})",
    required=True,
)
_PAY_CURRENCY_HELP = (
    "Cryptocurrency to pay with. Use list_currencies to get valid values. "
    f"Defaults to '{DEFAULT_PAY_CURRENCY}'."
)

TOOL_SPECS: Tuple[ToolSpec, ...] = (
    ToolSpec(
        name="register_agent",
        description=(
            "Register a new AI agent with ProxyBase and receive an API key. This is the first "
            "step: you need an API key to use all other tools. The API key should be saved and "
            "reused for subsequent requests."
        ),
    ),
    ToolSpec(
        name="list_packages",
        description=(
            "List all available proxy bandwidth packages with pricing. Each package includes a "
            "bandwidth allocation (in bytes), price (in USD), proxy type, and target country."
        ),
        params=(_API_KEY,),
    ),
    ToolSpec(
        name="list_currencies",
        description=(
            "List all available payment currencies (cryptocurrencies) that can be used for the "
            "pay_currency field when creating an order or topping up. Call this before creating "
            "an order to know which pay_currency values are valid."
        ),
        params=(_API_KEY,),
    ),
    ToolSpec(
        name="create_order",
        description=(
            "Create a new proxy order. This generates a cryptocurrency payment invoice. Once "
            "payment is confirmed on-chain, SOCKS5 proxy credentials are provisioned "
            "automatically. Poll check_order_status to monitor payment and get credentials."
        ),
        params=(
            _API_KEY,
            ToolParam(
                "package_id",
                "The package ID to purchase (e.g., 'us_residential_1gb')",
                required=True,
            ),
            ToolParam("pay_currency", _PAY_CURRENCY_HELP, default=DEFAULT_PAY_CURRENCY),
            ToolParam(
                "callback_url",
                "Optional webhook URL to receive status notifications (payment confirmed, "
                "bandwidth 80%/95%, exhausted)",
            ),
        ),
    ),
    ToolSpec(
        name="check_order_status",
        description=(
            "Check the current status of an order. Returns payment status, bandwidth usage, and "
            "SOCKS5 proxy credentials (host, port, username, password) once the proxy is active. "
            "Statuses: payment_pending -> confirming -> paid -> proxy_active -> bandwidth_exhausted."
        ),
        params=(
            _API_KEY,
            ToolParam("order_id", "The order ID returned from create_order", required=True),
        ),
    ),
    ToolSpec(
        name="topup_order",
        description=(
            "Add more bandwidth to an existing order. Creates a new payment invoice for the "
            "additional bandwidth. The proxy credentials remain the same; only the bandwidth "
            "allowance increases. Can also reactivate an exhausted proxy."
        ),
        params=(
            _API_KEY,
            ToolParam("order_id", "The order ID to top up", required=True),
            ToolParam(
                "package_id",
                "The bandwidth package to add (e.g., 'us_residential_1gb')",
                required=True,
            ),
            ToolParam("pay_currency", _PAY_CURRENCY_HELP),
        ),
    ),
)

READ_ONLY_TOOLS: FrozenSet[str] = frozenset({"list_packages", "list_currencies", "check_order_status"})

# Each call mints a new agent, order or invoice.
NON_IDEMPOTENT_TOOLS: FrozenSet[str] = frozenset({"register_agent", "create_order", "topup_order"})

DESTRUCTIVE_TOOLS: FrozenSet[str] = frozenset()

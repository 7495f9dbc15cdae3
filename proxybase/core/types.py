"""
ProxyBase Core Types
--------------------
Pydantic models and enums for the entities relayed from the ProxyBase backend.

The MCP server never mutates these objects; they are parsed from backend
responses so that missing or malformed fields surface as errors instead of
leaking half-formed payloads to the caller.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

DEFAULT_PAY_CURRENCY = "usdttrc20"
API_KEY_PREFIX = "pk_"


class OrderStatus(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    CONFIRMING = "confirming"
    PAID = "paid"
    PROXY_ACTIVE = "proxy_active"
    BANDWIDTH_EXHAUSTED = "bandwidth_exhausted"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_settled(self) -> bool:
        """True once payment has cleared (paid or any later status)."""
        return self.rank >= OrderStatus.PAID.rank


_STATUS_ORDER = [
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.CONFIRMING,
    OrderStatus.PAID,
    OrderStatus.PROXY_ACTIVE,
    OrderStatus.BANDWIDTH_EXHAUSTED,
]


class _BackendModel(BaseModel):
    # Backend may add fields over time; keep them so they are relayed as-is.
    model_config = ConfigDict(extra="allow")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Agent(_BackendModel):
    agent_id: str
    api_key: str


class ProxyCredentials(_BackendModel):
    host: str
    port: int
    username: str
    password: str


class PackageCatalog(_BackendModel):
    packages: List[Dict[str, Any]]


class CurrencyList(_BackendModel):
    currencies: List[str]

    def supports(self, currency: str) -> bool:
        wanted = currency.strip().lower()
        return any(c.lower() == wanted for c in self.currencies)


class OrderInvoice(_BackendModel):
    """Payment invoice returned when an order is created."""
    order_id: str
    payment_id: str
    pay_address: str
    pay_currency: str
    pay_amount: float
    price_usd: float
    status: OrderStatus


class TopupInvoice(OrderInvoice):
    """Invoice for additional bandwidth on an existing order."""
    price_usd: Optional[float] = None


class OrderStatusSnapshot(_BackendModel):
    order_id: str
    status: OrderStatus
    bandwidth_bytes: Optional[int] = None
    used_bytes: Optional[int] = None
    remaining_bytes: Optional[int] = None
    usage_percentage: Optional[float] = None
    proxy: Optional[ProxyCredentials] = Field(default=None, validate_default=True)

    @field_validator("proxy")
    @classmethod
    def _require_proxy_when_active(
        cls, value: Optional[ProxyCredentials], info: ValidationInfo
    ) -> Optional[ProxyCredentials]:
        if value is None and info.data.get("status") == OrderStatus.PROXY_ACTIVE:
            raise ValueError("proxy credentials are required once the proxy is active")
        return value

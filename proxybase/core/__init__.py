from proxybase.core.config import ConfigError, ProxyBaseConfig
from proxybase.core.types import (
    Agent,
    CurrencyList,
    OrderInvoice,
    OrderStatus,
    OrderStatusSnapshot,
    PackageCatalog,
    ProxyCredentials,
    TopupInvoice,
)

__all__ = [
    "ConfigError",
    "ProxyBaseConfig",
    "Agent",
    "CurrencyList",
    "OrderInvoice",
    "OrderStatus",
    "OrderStatusSnapshot",
    "PackageCatalog",
    "ProxyCredentials",
    "TopupInvoice",
]

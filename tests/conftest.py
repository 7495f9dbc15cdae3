"""Shared fakes for the ProxyBase MCP tests."""

from __future__ import annotations

import io
import json
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from proxybase.core.types import (
    Agent,
    CurrencyList,
    OrderInvoice,
    OrderStatusSnapshot,
    PackageCatalog,
    TopupInvoice,
)
from proxybase.mcp.handlers import Dispatcher
from proxybase.mcp.registry import build_registry
from proxybase.mcp.server import McpServer


ACTIVE_PROXY = {
    "host": "proxy.proxybase.xyz",
    "port": 1080,
    "username": "pb_user",
    "password": "pb_pass",
}


class FakeProxyBaseClient:
    """In-memory stand-in for ProxyBaseClient that records every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.currencies = ["usdttrc20", "btc", "eth"]
        self.status_sequence: Dict[str, List[str]] = {}
        self.errors: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def _record(self, name: str, **kwargs: Any) -> None:
        with self._lock:
            self.calls.append((name, kwargs))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        error = self.errors.get(name)
        if error is not None:
            raise error

    def call_names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def register_agent(self) -> Agent:
        self._record("register_agent")
        return Agent(agent_id="agent_7f3a", api_key="pk_live_0123456789")

    def list_packages(self, api_key: str) -> PackageCatalog:
        self._record("list_packages", api_key=api_key)
        return PackageCatalog(packages=[
            {"id": "us_residential_1gb", "bandwidth_bytes": 1073741824, "price_usd": 10.0},
        ])

    def list_currencies(self, api_key: str) -> CurrencyList:
        self._record("list_currencies", api_key=api_key)
        return CurrencyList(currencies=list(self.currencies))

    def create_order(self, api_key, package_id, pay_currency="usdttrc20", callback_url=None) -> OrderInvoice:
        self._record(
            "create_order",
            api_key=api_key,
            package_id=package_id,
            pay_currency=pay_currency,
            callback_url=callback_url,
        )
        return OrderInvoice(
            order_id="ord_001",
            payment_id="pay_001",
            pay_address="TXyz123",
            pay_currency=pay_currency,
            pay_amount=10.5,
            price_usd=10.0,
            status="payment_pending",
        )

    def check_order_status(self, api_key: str, order_id: str) -> OrderStatusSnapshot:
        self._record("check_order_status", api_key=api_key, order_id=order_id)
        sequence = self.status_sequence.get(order_id) or ["payment_pending"]
        status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        payload: Dict[str, Any] = {"order_id": order_id, "status": status}
        if status in ("proxy_active", "bandwidth_exhausted"):
            payload.update({
                "bandwidth_bytes": 1073741824,
                "used_bytes": 1024,
                "remaining_bytes": 1073740800,
                "usage_percentage": 0.0,
                "proxy": dict(ACTIVE_PROXY),
            })
        return OrderStatusSnapshot.model_validate(payload)

    def topup_order(self, api_key, order_id, package_id, pay_currency=None) -> TopupInvoice:
        self._record(
            "topup_order",
            api_key=api_key,
            order_id=order_id,
            package_id=package_id,
            pay_currency=pay_currency,
        )
        return TopupInvoice(
            order_id=order_id,
            payment_id="pay_002",
            pay_address="TXyz456",
            pay_currency=pay_currency or "usdttrc20",
            pay_amount=5.25,
            status="payment_pending",
        )


def rpc(msg_id: Any, method: str, params: Optional[Dict[str, Any]] = None) -> str:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


def notify(method: str, params: Optional[Dict[str, Any]] = None) -> str:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


def call_tool(msg_id: Any, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
    return rpc(msg_id, "tools/call", {"name": name, "arguments": arguments or {}})


INITIALIZE = rpc(0, "initialize", {"protocolVersion": "2024-11-05", "clientInfo": {"name": "pytest"}})


@pytest.fixture
def fake_client() -> FakeProxyBaseClient:
    return FakeProxyBaseClient()


@pytest.fixture
def dispatcher(fake_client) -> Dispatcher:
    return Dispatcher(build_registry(fake_client))


@pytest.fixture
def ready_dispatcher(dispatcher) -> Dispatcher:
    dispatcher.handle_initialize({"protocolVersion": "2024-11-05"})
    return dispatcher


@pytest.fixture
def run_server(fake_client):
    """Feed lines through a full McpServer and return (exit_code, parsed output lines)."""

    def _run(lines: List[Any], **server_kwargs: Any):
        data = b"".join(
            (line if isinstance(line, bytes) else line.encode("utf-8")) + b"\n"
            for line in lines
        )
        output = io.BytesIO()
        server = McpServer(
            Dispatcher(build_registry(fake_client)),
            input_stream=io.BytesIO(data),
            output_stream=output,
            **server_kwargs,
        )
        exit_code = server.serve()
        raw_lines = output.getvalue().decode("utf-8").splitlines()
        return exit_code, [json.loads(raw) for raw in raw_lines]

    return _run

"""
ProxyBase backend client.

One method per MCP tool. Every method returns a parsed domain entity from
proxybase.core.types or raises a BackendError subclass.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar
from urllib.parse import quote

import requests
from pydantic import BaseModel, ValidationError

from proxybase.core.config import DEFAULT_API_URL, normalize_api_url
from proxybase.core.types import (
    DEFAULT_PAY_CURRENCY,
    Agent,
    CurrencyList,
    OrderInvoice,
    OrderStatusSnapshot,
    PackageCatalog,
    TopupInvoice,
)
from proxybase.sdk.errors import (
    BackendError,
    BackendInvalidError,
    BackendNotFoundError,
    BackendTransientError,
    BackendUnauthorizedError,
    BackendUnreachableError,
)
from proxybase.version import __version__

logger = logging.getLogger("ProxyBase.sdk.client")

ModelT = TypeVar("ModelT", bound=BaseModel)

_TRANSIENT_STATUS_CODES = {408, 425, 429}
_INVALID_STATUS_CODES = {400, 409, 422}
RETRY_BACKOFF_BASE_SEC = 0.2
RETRY_BACKOFF_FACTOR = 4.0


def _coerce_error_detail(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            detail = payload.get(key)
            if isinstance(detail, str) and detail:
                return detail
            if detail is not None:
                try:
                    return json.dumps(detail, sort_keys=True)
                except (TypeError, ValueError):
                    return str(detail)
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return fallback


def backoff_delay(attempt: int) -> float:
    """Delay before retry number ``attempt + 1`` (0.2s, 0.8s, ...)."""
    return RETRY_BACKOFF_BASE_SEC * (RETRY_BACKOFF_FACTOR ** attempt)


class ProxyBaseClient:
    """
    Synchronous client for the ProxyBase REST API.

    Read-only calls (packages, currencies, order status) are retried on
    transient failures; calls that create agents, orders or invoices are sent
    exactly once.

    Usage:
        client = ProxyBaseClient("https://api.proxybase.xyz")
        agent = client.register_agent()
        catalog = client.list_packages(agent.api_key)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        max_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = normalize_api_url(base_url)
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self._sleep = sleep
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._session.headers.setdefault("Accept", "application/json")
        self._session.headers.setdefault("User-Agent", f"proxybase-mcp/{__version__}")

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "ProxyBaseClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        api_key: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        idempotent: bool = False,
    ) -> Dict[str, Any]:
        retries = self.max_retries if idempotent else 0
        attempt = 0
        while True:
            try:
                return self._send_once(method, path, api_key=api_key, json_body=json_body)
            except BackendTransientError as exc:
                if attempt >= retries:
                    raise
                delay = backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    "Backend %s %s failed (%s); retrying in %.2fs (attempt %d/%d)",
                    method,
                    path,
                    exc.kind,
                    delay,
                    attempt + 1,
                    retries + 1,
                )
                self._sleep(delay)

    def _send_once(
        self,
        method: str,
        path: str,
        *,
        api_key: Optional[str],
        json_body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        url = self._url(path)
        headers: Dict[str, str] = {}
        if api_key:
            headers["X-API-Key"] = api_key
        try:
            response = self._session.request(
                method=method,
                url=url,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise BackendTransientError(
                f"Timed out calling ProxyBase backend at {self.base_url}",
                cause=f"timeout: {exc}",
                path=path,
            ) from exc
        except requests.ConnectionError as exc:
            raise BackendUnreachableError(
                f"Failed to connect to ProxyBase backend at {self.base_url}",
                cause=str(exc),
                path=path,
            ) from exc
        except requests.RequestException as exc:
            raise BackendTransientError(
                f"Request to ProxyBase backend failed: {exc}",
                cause=str(exc),
                path=path,
            ) from exc

        payload: Any
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
        else:
            payload = {}

        status_code = response.status_code
        if status_code >= 400:
            raise self._error_for_status(payload, status_code=status_code, path=path)
        if not isinstance(payload, dict):
            raise BackendInvalidError(
                "Backend returned a non-object JSON payload",
                status_code=status_code,
                path=path,
                payload=payload,
            )
        logger.debug("Backend %s %s -> %d", method, path, status_code)
        return payload

    def _error_for_status(self, payload: Any, *, status_code: int, path: str) -> BackendError:
        detail = _coerce_error_detail(payload, f"HTTP {status_code} error")
        kwargs = {"status_code": status_code, "path": path, "payload": payload}
        if status_code in (401, 403):
            return BackendUnauthorizedError(detail, **kwargs)
        if status_code == 404:
            return BackendNotFoundError(detail, **kwargs)
        if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
            return BackendTransientError(detail, cause=f"HTTP {status_code}: {detail}", **kwargs)
        field = payload.get("field") if isinstance(payload, dict) else None
        if status_code not in _INVALID_STATUS_CODES:
            logger.warning("Unexpected backend status %d for %s; treating as invalid", status_code, path)
        return BackendInvalidError(detail, field=field if isinstance(field, str) else None, **kwargs)

    def _parse(self, model: Type[ModelT], payload: Dict[str, Any], *, path: str) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or None
            raise BackendInvalidError(
                f"Backend response for {model.__name__} has missing or invalid field "
                f"'{field}': {first.get('msg')}",
                field=field,
                path=path,
                payload=payload,
            ) from exc

    def register_agent(self) -> Agent:
        payload = self._request("POST", "/v1/agents")
        return self._parse(Agent, payload, path="/v1/agents")

    def list_packages(self, api_key: str) -> PackageCatalog:
        payload = self._request("GET", "/v1/packages", api_key=api_key, idempotent=True)
        return self._parse(PackageCatalog, payload, path="/v1/packages")

    def list_currencies(self, api_key: str) -> CurrencyList:
        payload = self._request("GET", "/v1/currencies", api_key=api_key, idempotent=True)
        return self._parse(CurrencyList, payload, path="/v1/currencies")

    def create_order(
        self,
        api_key: str,
        package_id: str,
        pay_currency: str = DEFAULT_PAY_CURRENCY,
        callback_url: Optional[str] = None,
    ) -> OrderInvoice:
        body: Dict[str, Any] = {"package_id": package_id, "pay_currency": pay_currency}
        if callback_url:
            body["callback_url"] = callback_url
        payload = self._request("POST", "/v1/orders", api_key=api_key, json_body=body)
        return self._parse(OrderInvoice, payload, path="/v1/orders")

    def check_order_status(self, api_key: str, order_id: str) -> OrderStatusSnapshot:
        path = f"/v1/orders/{quote(order_id, safe='')}/status"
        payload = self._request("GET", path, api_key=api_key, idempotent=True)
        return self._parse(OrderStatusSnapshot, payload, path=path)

    def topup_order(
        self,
        api_key: str,
        order_id: str,
        package_id: str,
        pay_currency: Optional[str] = None,
    ) -> TopupInvoice:
        path = f"/v1/orders/{quote(order_id, safe='')}/topup"
        body: Dict[str, Any] = {"package_id": package_id}
        if pay_currency:
            body["pay_currency"] = pay_currency
        payload = self._request("POST", path, api_key=api_key, json_body=body)
        return self._parse(TopupInvoice, payload, path=path)

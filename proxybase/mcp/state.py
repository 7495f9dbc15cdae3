import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional

from proxybase.core.types import OrderStatus, OrderStatusSnapshot

logger = logging.getLogger("ProxyBase.mcp.state")


class Lifecycle(str, Enum):
    AWAITING_INITIALIZE = "awaiting_initialize"
    READY = "ready"
    DRAINING = "draining"
    CLOSED = "closed"


class SessionState:
    """
    Per-connection protocol state.

    Transitions only move forward: AWAITING_INITIALIZE -> READY -> DRAINING ->
    CLOSED. Re-initializing while READY keeps the session READY.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lifecycle = Lifecycle.AWAITING_INITIALIZE
        self.protocol_version: Optional[str] = None
        self.client_info: Dict[str, Any] = {}
        self.client_capabilities: Dict[str, Any] = {}
        self.client_initialized = False

    @property
    def lifecycle(self) -> Lifecycle:
        with self._lock:
            return self._lifecycle

    def mark_ready(self, protocol_version: str, client_info: Dict[str, Any], capabilities: Dict[str, Any]) -> None:
        with self._lock:
            if self._lifecycle in (Lifecycle.DRAINING, Lifecycle.CLOSED):
                logger.warning("Ignoring initialize while session is %s", self._lifecycle.value)
                return
            self._lifecycle = Lifecycle.READY
            self.protocol_version = protocol_version
            self.client_info = dict(client_info)
            self.client_capabilities = dict(capabilities)

    def mark_client_initialized(self) -> None:
        with self._lock:
            self.client_initialized = True

    def begin_drain(self) -> None:
        with self._lock:
            if self._lifecycle != Lifecycle.CLOSED:
                self._lifecycle = Lifecycle.DRAINING

    def close(self) -> None:
        with self._lock:
            self._lifecycle = Lifecycle.CLOSED


class OrderStatusTracker:
    """
    Keeps status reports monotonic within one server run.

    The backend owns order state; this only prevents a session from seeing an
    order fall back to payment_pending/confirming after it was reported as
    paid or later, e.g. when a lagging replica answers a poll. In that case the
    last reported snapshot is returned whole, so credentials and usage stay
    consistent with the status. Movement between settled statuses
    (proxy_active <-> bandwidth_exhausted after a top-up) is passed through.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_seen: Dict[str, OrderStatusSnapshot] = {}

    def observe(self, snapshot: OrderStatusSnapshot) -> OrderStatusSnapshot:
        """Return the snapshot to report for this poll."""
        with self._lock:
            previous = self._last_seen.get(snapshot.order_id)
            reported = snapshot
            if (
                previous is not None
                and previous.status.rank > snapshot.status.rank
                and not snapshot.status.is_settled
            ):
                logger.warning(
                    "Order %s regressed from %s to %s; reporting %s",
                    snapshot.order_id,
                    previous.status.value,
                    snapshot.status.value,
                    previous.status.value,
                )
                reported = previous
            self._last_seen[snapshot.order_id] = reported
            return reported

    def last_seen(self, order_id: str) -> Optional[OrderStatus]:
        with self._lock:
            previous = self._last_seen.get(order_id)
            return previous.status if previous is not None else None

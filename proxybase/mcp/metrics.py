import time
import logging
from typing import Any, Optional

logger = logging.getLogger("ProxyBase.mcp.metrics")

DEFAULT_WARN_THRESHOLD_MS = 10000.0


class McpMetrics:
    """
    Tracks latency and payload size for a single MCP tool call.
    """
    def __init__(self, msg_id: Any, name: str):
        self.msg_id = msg_id
        self.name = name
        self.response_bytes = 0
        self.error_code: Optional[int] = None
        self.responded = False
        self.started_monotonic = time.monotonic()

    @property
    def elapsed_ms(self) -> float:
        return max(0.0, (time.monotonic() - self.started_monotonic) * 1000.0)

    def record_response(self, line: bytes, error_code: Optional[int] = None) -> None:
        """Record the single line written for this call."""
        self.responded = True
        self.response_bytes = len(line)
        self.error_code = error_code

    def get_outcome(self) -> str:
        if not self.responded:
            return "no_response"
        if self.error_code is not None:
            return "error"
        return "success"

    def log_telemetry(self, warn_threshold_ms: float = DEFAULT_WARN_THRESHOLD_MS) -> None:
        """Log normalized telemetry for the tool call."""
        elapsed_ms = self.elapsed_ms
        log_method = logger.warning if elapsed_ms >= warn_threshold_ms else logger.info
        log_method(
            "Tool call telemetry: name=%s id=%r outcome=%s error_code=%s elapsed_ms=%.1f response_bytes=%d",
            self.name,
            self.msg_id,
            self.get_outcome(),
            "n/a" if self.error_code is None else self.error_code,
            elapsed_ms,
            self.response_bytes,
        )

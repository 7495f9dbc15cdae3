import sys
import queue
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Optional, Tuple

from .codec import (
    DecodeError,
    ErrorResponse,
    Message,
    Notification,
    Request,
    Response,
    decode,
    encode,
)
from .handlers import Dispatcher
from .metrics import McpMetrics
from .protocol import INTERNAL_ERROR, INVALID_REQUEST, REQUEST_TIMEOUT, RpcError

logger = logging.getLogger("ProxyBase.mcp.server")

PendingKey = Tuple[str, Any]

_WRITER_STOP = object()


def _pending_key(msg_id: Any) -> PendingKey:
    # 1 and "1" are different JSON-RPC ids
    return (type(msg_id).__name__, msg_id)


@dataclass
class PendingCall:
    key: PendingKey
    id: Any
    method: str
    started_at: float = field(default_factory=time.monotonic)
    timer: Optional[threading.Timer] = None
    metrics: Optional[McpMetrics] = None


class OutputWriter:
    """
    Sole owner of the output stream.

    Lines are queued by any thread and written whole, in queue order, by one
    writer thread, so concurrent responses can never interleave mid-line.
    """

    def __init__(self, stream: BinaryIO, transport_closed: threading.Event):
        self.stream = stream
        self.transport_closed = transport_closed
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            name="proxybase-mcp-writer",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def submit(self, line: bytes) -> None:
        self._queue.put(line)

    def close(self, timeout: Optional[float] = None) -> None:
        """Flush everything queued so far, then stop the writer thread."""
        self._queue.put(_WRITER_STOP)
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            line = self._queue.get()
            if line is _WRITER_STOP:
                return
            if self.transport_closed.is_set():
                logger.debug("Discarding outbound line; transport closed")
                continue
            try:
                self.stream.write(line)
                self.stream.flush()
            # ValueError: write to a closed file object
            except (OSError, ValueError) as exc:
                self.transport_closed.set()
                logger.warning("MCP stdio transport closed while sending: %s", exc)


class McpServer:
    """
    Line-delimited JSON-RPC over stdio with a bounded worker pool.

    One reader (serve), up to max_workers concurrent tool calls admitted
    through a blocking semaphore, and one writer. Every request id receives
    exactly one line: the handler result, an error, or a timeout.
    """
    def __init__(
        self,
        dispatcher: Dispatcher,
        input_stream: Optional[BinaryIO] = None,
        output_stream: Optional[BinaryIO] = None,
        max_workers: int = 16,
        queue_limit: Optional[int] = None,
        call_timeout: float = 30.0,
        shutdown_timeout: float = 35.0,
        slow_call_warn_ms: float = 10000.0,
    ):
        self.dispatcher = dispatcher
        self.input_stream = input_stream if input_stream is not None else sys.stdin.buffer
        self.output_stream = output_stream if output_stream is not None else sys.stdout.buffer
        self.max_workers = max(1, int(max_workers))
        self.queue_limit = max(self.max_workers, int(queue_limit or self.max_workers * 4))
        self.call_timeout = call_timeout
        self.shutdown_timeout = shutdown_timeout
        self.slow_call_warn_ms = slow_call_warn_ms

        self.transport_closed = threading.Event()
        self._writer = OutputWriter(self.output_stream, self.transport_closed)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._admission = threading.BoundedSemaphore(self.queue_limit)

        self._pending: Dict[PendingKey, PendingCall] = {}
        self._pending_cond = threading.Condition(threading.Lock())
        self._started = False

    @property
    def in_flight(self) -> int:
        with self._pending_cond:
            return len(self._pending)

    def get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="proxybase-mcp-dispatch",
                )
            return self._executor

    def start(self) -> None:
        if not self._started:
            self._started = True
            self._writer.start()

    def serve(self) -> int:
        """Read until end of input, then drain. Returns the process exit code."""
        self.start()
        logger.info(
            "ProxyBase MCP server started (workers=%d, queue_limit=%d, call_timeout=%.1fs)",
            self.max_workers,
            self.queue_limit,
            self.call_timeout,
        )
        try:
            while not self.transport_closed.is_set():
                line = self.input_stream.readline()
                if not line:
                    logger.info("Input stream closed; draining in-flight requests")
                    break
                if not line.strip():
                    continue
                try:
                    self.handle_line(line)
                except Exception:
                    logger.exception("Loop error while handling inbound line")
        except KeyboardInterrupt:
            logger.info("Interrupted; draining in-flight requests")
        finally:
            self.shutdown()
        return 0

    def handle_line(self, line: bytes) -> None:
        try:
            message = decode(line)
        except DecodeError as exc:
            if exc.notification:
                logger.warning("Dropping malformed notification: %s", exc.message)
                return
            logger.warning("Rejected inbound line: %s", exc.message)
            self.send(ErrorResponse.from_rpc_error(exc.msg_id, exc))
            return
        self.handle_message(message)

    def handle_message(self, message: Message) -> None:
        if isinstance(message, Request):
            if self.dispatcher.runs_inline(message):
                self._dispatch_inline(message)
            else:
                self.submit_dispatch(message)
            return
        if isinstance(message, Notification):
            try:
                self.dispatcher.handle_notification(message)
            except Exception:
                logger.exception("Notification %s failed", message.method)
            return
        logger.warning("Ignoring inbound JSON-RPC response for id=%r; server issues no requests", message.id)

    def send(self, message: Message) -> None:
        """Queue one message for the writer."""
        if self.transport_closed.is_set():
            return
        self._writer.submit(self._encode_safely(message))

    def _encode_safely(self, message: Message) -> bytes:
        """Encode to wire bytes; never raises for a message the dispatcher produced."""
        msg_id = getattr(message, "id", None)
        try:
            line = encode(message)
        except (TypeError, ValueError):
            logger.exception("Failed to serialize response for id=%r", msg_id)
            return encode(
                ErrorResponse(
                    id=msg_id,
                    error={"code": INTERNAL_ERROR, "message": "Internal error: response could not be serialized."},
                ),
                ensure_ascii=True,
            ).encode("ascii")
        try:
            return line.encode("utf-8")
        except UnicodeEncodeError:
            # Lone surrogates (e.g. an id of "\ud800") survive json.loads but not UTF-8.
            logger.warning("Response for id=%r has unpaired surrogates; sending escaped JSON", msg_id)
            return encode(message, ensure_ascii=True).encode("ascii")

    def _register(self, request: Request, metrics: Optional[McpMetrics] = None) -> Optional[PendingCall]:
        key = _pending_key(request.id)
        with self._pending_cond:
            if key in self._pending:
                duplicate = True
            else:
                duplicate = False
                pending = PendingCall(key=key, id=request.id, method=request.method, metrics=metrics)
                self._pending[key] = pending
        if duplicate:
            logger.warning("Rejecting request with duplicate in-flight id=%r", request.id)
            self.send(ErrorResponse.from_rpc_error(
                request.id,
                RpcError(INVALID_REQUEST, f"Invalid Request: id {request.id!r} is already in flight"),
            ))
            return None
        return pending

    def _dispatch_inline(self, request: Request) -> None:
        pending = self._register(request)
        if pending is None:
            return
        self._complete(pending.key, self._execute(request))

    def submit_dispatch(self, request: Request) -> None:
        """Admit a request to the worker pool, blocking while the pool is saturated."""
        self._admission.acquire()
        name = request.params.get("name") if isinstance(request.params, dict) else None
        metrics = McpMetrics(request.id, name if isinstance(name, str) else request.method)
        pending = self._register(request, metrics)
        if pending is None:
            self._admission.release()
            return

        timer = threading.Timer(self.call_timeout, self._on_timeout, args=(pending.key,))
        timer.daemon = True
        pending.timer = timer
        timer.start()

        try:
            future = self.get_executor().submit(self._run_request, request, pending.key)
        except RuntimeError:
            self._admission.release()
            logger.exception("Dispatch executor unavailable for id=%r", request.id)
            self._complete(pending.key, ErrorResponse(
                id=request.id,
                error={"code": INTERNAL_ERROR, "message": "Internal error: server is shutting down."},
            ))
            return

        future.add_done_callback(lambda _f: self._admission.release())

    def _execute(self, request: Request) -> Message:
        try:
            return Response(id=request.id, result=self.dispatcher.handle_request(request))
        except RpcError as exc:
            return ErrorResponse.from_rpc_error(request.id, exc)
        except Exception:
            logger.exception("Unexpected error during RPC dispatch of %s", request.method)
            return ErrorResponse(
                id=request.id,
                error={"code": INTERNAL_ERROR, "message": "Internal error during request dispatch."},
            )

    def _run_request(self, request: Request, key: PendingKey) -> None:
        with self._pending_cond:
            still_pending = key in self._pending
        if not still_pending:
            # Timed out while queued; the caller already has its answer.
            logger.warning(
                "Skipping id=%r (%s); answered before a worker picked it up",
                request.id,
                request.method,
            )
            return
        message = self._execute(request)
        if not self._complete(key, message):
            logger.warning(
                "Dropping late result for id=%r (%s); it was already answered",
                request.id,
                request.method,
            )

    def _complete(self, key: PendingKey, message: Message) -> bool:
        """Write the one response for a pending call. False if already answered."""
        line = self._encode_safely(message)
        with self._pending_cond:
            pending = self._pending.pop(key, None)
            if pending is None:
                return False
            if pending.timer is not None:
                pending.timer.cancel()
            if not self.transport_closed.is_set():
                self._writer.submit(line)
            self._pending_cond.notify_all()

        if pending.metrics is not None:
            error = getattr(message, "error", None)
            pending.metrics.record_response(line, error.get("code") if isinstance(error, dict) else None)
            pending.metrics.log_telemetry(self.slow_call_warn_ms)
        return True

    def _on_timeout(self, key: PendingKey) -> None:
        with self._pending_cond:
            pending = self._pending.get(key)
        if pending is None:
            return
        elapsed = time.monotonic() - pending.started_at
        logger.warning("Request id=%r (%s) timed out after %.1fs", pending.id, pending.method, elapsed)
        self._complete(key, ErrorResponse.from_rpc_error(
            pending.id,
            RpcError(
                REQUEST_TIMEOUT,
                f"Request timed out after {self.call_timeout:.1f}s",
                {"cause": "timeout", "timeout_sec": self.call_timeout},
            ),
        ))

    def shutdown(self) -> None:
        """Drain in-flight work within the shutdown budget, then stop the writer."""
        session = self.dispatcher.session
        session.begin_drain()

        deadline = time.monotonic() + self.shutdown_timeout
        with self._pending_cond:
            while self._pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._pending_cond.wait(timeout=remaining)
            leftovers = list(self._pending.values())

        for pending in leftovers:
            logger.warning("Abandoning id=%r (%s) at shutdown", pending.id, pending.method)
            self._complete(pending.key, ErrorResponse.from_rpc_error(
                pending.id,
                RpcError(
                    REQUEST_TIMEOUT,
                    "Request abandoned: server shutting down",
                    {"cause": "shutdown", "timeout_sec": self.shutdown_timeout},
                ),
            ))

        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
        self._writer.close(timeout=5.0)
        session.close()
        logger.info("ProxyBase MCP server stopped")

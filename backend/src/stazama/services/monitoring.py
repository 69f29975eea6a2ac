"""Best-effort performance metrics and error capture.

The process-wide ``monitoring`` singleton keeps two bounded buffers (most
recent N metrics and errors) and ships them to ``<endpoint>/api/metrics`` and
``<endpoint>/api/errors`` every 30 seconds. Nothing in this module raises into
the host application: capture paths swallow their own failures and a failed
flush puts the snapshot back at the front of the buffer.

Instrumentation hooks:
- ``InstrumentedTransport`` wraps an httpx transport and times every call.
  Outgoing traffic (including the export itself) goes through
  ``instrumented_client``; served requests are timed by the app middleware.
- ``install_global_handlers`` funnels uncaught exceptions (sys.excepthook and
  the asyncio loop exception handler) into ``capture_error``.
- ``record_startup_metrics`` records application startup timing once.
"""

import asyncio
import inspect
import logging
import sys
import time
import traceback
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from stazama.app.config import get_settings

logger = logging.getLogger(__name__)

# Set by the auth dependency for the duration of a request
current_user_id: ContextVar[Optional[str]] = ContextVar("current_user_id", default=None)

Sender = Callable[[str, dict], Awaitable[None]]


@dataclass
class PerformanceMetric:
    name: str
    value: float
    timestamp: float
    tags: Optional[dict[str, str]] = None


@dataclass
class ErrorEvent:
    message: str
    stack: Optional[str]
    timestamp: float
    user_id: Optional[str] = None
    tags: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None


def _now_ms() -> float:
    return time.time() * 1000


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return repr(value)


class MonitoringService:
    """Bounded metric/error buffers with periodic remote export."""

    def __init__(
        self,
        endpoint: str = "",
        max_metrics: int = 1000,
        max_errors: int = 100,
        flush_interval_s: float = 30.0,
        sender: Optional[Sender] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.max_metrics = max_metrics
        self.max_errors = max_errors
        self.flush_interval_s = flush_interval_s
        self._sender = sender or self._http_sender
        self._transport = transport
        self._metrics: list[PerformanceMetric] = []
        self._errors: list[ErrorEvent] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._startup_recorded = False

    # -- capture --------------------------------------------------------------

    def record_metric(
        self, name: str, value: float, tags: Optional[dict[str, str]] = None
    ) -> None:
        try:
            self._metrics.append(
                PerformanceMetric(name=name, value=float(value), timestamp=_now_ms(), tags=tags)
            )
            if len(self._metrics) > self.max_metrics:
                self._metrics = self._metrics[-self.max_metrics:]
        except Exception as e:
            logger.debug("Dropped metric %s: %s", name, e)

    def capture_error(
        self,
        error: Union[BaseException, str],
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            if isinstance(error, BaseException):
                message = str(error) or type(error).__name__
                stack = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
            else:
                message, stack = str(error), None

            safe_context = _json_safe(context) if context else None
            self._errors.append(
                ErrorEvent(
                    message=message,
                    stack=stack,
                    timestamp=_now_ms(),
                    user_id=self._current_user_id(),
                    tags=safe_context,
                    context=safe_context,
                )
            )
            if len(self._errors) > self.max_errors:
                self._errors = self._errors[-self.max_errors:]
            logger.debug("Captured error: %s", message)
        except Exception as e:
            logger.debug("Failed to capture error: %s", e)

    def _current_user_id(self) -> Optional[str]:
        try:
            return current_user_id.get()
        except Exception:
            return None

    async def time(
        self,
        name: str,
        operation: Callable[[], Any],
        tags: Optional[dict[str, str]] = None,
    ) -> Any:
        """Run a sync or async ``operation`` and record its duration in ms.

        A failing operation is recorded with ``success: "false"``, captured,
        and re-raised.
        """
        start = time.perf_counter()
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            self.record_metric(name, elapsed, {**(tags or {}), "success": "false"})
            self.capture_error(e, {"operation": name, **(tags or {})})
            raise
        self.record_metric(name, (time.perf_counter() - start) * 1000, tags)
        return result

    def record_startup_metrics(self, started_at: float) -> None:
        """Record startup duration once. ``started_at`` is a perf_counter value."""
        if self._startup_recorded:
            return
        self._startup_recorded = True
        self.record_metric("app_startup_time", (time.perf_counter() - started_at) * 1000)

    # -- export ---------------------------------------------------------------

    async def _http_sender(self, path: str, payload: dict) -> None:
        if not self.endpoint:
            logger.debug("Monitoring endpoint not configured, dropping %s payload", path)
            return
        async with instrumented_client(self, transport=self._transport, timeout=10.0) as client:
            response = await client.post(f"{self.endpoint.rstrip('/')}{path}", json=payload)
            response.raise_for_status()

    async def flush_metrics(self) -> None:
        if not self._metrics:
            return
        snapshot = self._metrics
        self._metrics = []
        try:
            await self._sender("/api/metrics", {"metrics": [asdict(m) for m in snapshot]})
        except Exception as e:
            self._metrics[:0] = snapshot
            logger.error("Failed to flush metrics: %s", e)

    async def flush_errors(self) -> None:
        if not self._errors:
            return
        snapshot = self._errors
        self._errors = []
        try:
            await self._sender("/api/errors", {"errors": [asdict(e) for e in snapshot]})
        except Exception as e:
            self._errors[:0] = snapshot
            logger.error("Failed to flush errors: %s", e)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            await self.flush_metrics()
            await self.flush_errors()

    def start(self) -> None:
        """Schedule the periodic flush on the running event loop."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def destroy(self) -> None:
        """Stop the periodic flush and ship whatever is buffered."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        await self.flush_metrics()
        await self.flush_errors()

    # -- inspection -----------------------------------------------------------

    def get_metrics(self) -> list[PerformanceMetric]:
        return list(self._metrics)

    def get_errors(self) -> list[ErrorEvent]:
        return list(self._errors)

    def reset(self) -> None:
        self._metrics = []
        self._errors = []


# ---------------------------------------------------------------------------
# Instrumentation
# ---------------------------------------------------------------------------


class InstrumentedTransport(httpx.AsyncBaseTransport):
    """httpx transport wrapper recording ``api_request_duration`` per call."""

    def __init__(
        self,
        wrapped: Optional[httpx.AsyncBaseTransport] = None,
        service: Optional[MonitoringService] = None,
    ):
        self._wrapped = wrapped or httpx.AsyncHTTPTransport()
        self._service = service

    @property
    def service(self) -> MonitoringService:
        return self._service or monitoring

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        method = request.method
        start = time.perf_counter()
        try:
            response = await self._wrapped.handle_async_request(request)
        except Exception as e:
            self.service.record_metric(
                "api_request_duration",
                (time.perf_counter() - start) * 1000,
                {"url": url, "method": method, "status": "error", "success": "false"},
            )
            self.service.capture_error(e, {"type": "api_error", "url": url, "method": method})
            raise

        self.service.record_metric(
            "api_request_duration",
            (time.perf_counter() - start) * 1000,
            {
                "url": url,
                "method": method,
                "status": str(response.status_code),
                "success": str(response.status_code < 400).lower(),
            },
        )
        return response

    async def aclose(self) -> None:
        await self._wrapped.aclose()


def instrumented_client(
    service: Optional[MonitoringService] = None, **kwargs
) -> httpx.AsyncClient:
    """An httpx.AsyncClient whose every call is timed into ``service``."""
    transport = InstrumentedTransport(kwargs.pop("transport", None), service)
    return httpx.AsyncClient(transport=transport, **kwargs)


def install_global_handlers(
    service: Optional[MonitoringService] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> None:
    """Route uncaught exceptions into ``capture_error``, keeping prior handlers."""
    service = service or monitoring
    previous_hook = sys.excepthook

    def _excepthook(exc_type, exc, tb):
        service.capture_error(exc, {"type": "uncaught_error"})
        previous_hook(exc_type, exc, tb)

    sys.excepthook = _excepthook

    loop = loop or asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()

    def _loop_handler(event_loop, context):
        error = context.get("exception") or context.get("message", "Unhandled task exception")
        service.capture_error(error, {"type": "unhandled_task_exception"})
        if previous_handler is not None:
            previous_handler(event_loop, context)
        else:
            event_loop.default_exception_handler(context)

    loop.set_exception_handler(_loop_handler)


_settings = get_settings()

monitoring = MonitoringService(
    endpoint=_settings.monitoring_endpoint,
    max_metrics=_settings.monitoring_max_metrics,
    max_errors=_settings.monitoring_max_errors,
    flush_interval_s=_settings.monitoring_flush_interval_seconds,
)

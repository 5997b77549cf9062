"""CloudWatch custom metrics for the support core.

Two families of data points are published under the ``Chatdesk`` namespace:

``ExternalAPI/*``
    One ``RequestCount`` per call to a collaborator (``anthropic``,
    ``google_calendar``, ``google_oauth``, ``resend``, ``webhook``,
    ``pubsub``) with its ``Latency`` and, on failure, an ``ErrorCount``
    keyed by exception class.

``Core/*``
    Domain counters: rate-limited messages, tool failures,
    booking requested before a lead was captured, failed notifications.

Data points are buffered in memory and pushed by a daemon thread.  With
``METRICS_ENABLED`` unset the buffer is still filled (and logged at DEBUG)
but nothing leaves the process.

>>> from chatdesk.services.metrics import metrics
>>> with metrics.timed("google_calendar", "freebusy"):
...     client.query_free_busy(...)
>>> metrics.record_event("ToolFailure", tool="bookAppointment")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "Chatdesk"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit

Datum = dict[str, Any]


def _datum(name: str, value: float, unit: str, dims: list[tuple[str, str]], at: datetime) -> Datum:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dims],
        "Timestamp": at,
        "Value": value,
        "Unit": unit,
    }


def _chunks(items: list[Datum], size: int) -> Iterator[list[Datum]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class MetricsClient:
    """Buffered CloudWatch publisher; one per process (see ``metrics`` below)."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[Datum] = []
        self._lock = threading.Lock()
        self._cw_client = None
        self._stop = threading.Event()

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ─────────────────────────────────────────────────────

    def _record_call(
        self,
        service: str,
        operation: str,
        *,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        at = datetime.now(UTC)
        status = "success" if error_type is None else "failure"
        batch = [_datum("ExternalAPI/RequestCount", 1, "Count", [("Service", service), ("Status", status)], at)]
        if error_type is not None:
            batch.append(
                _datum("ExternalAPI/ErrorCount", 1, "Count", [("Service", service), ("ErrorType", error_type)], at)
            )
        # Failures raised before any I/O carry no meaningful latency
        if error_type is None or latency_ms > 0:
            batch.append(
                _datum(
                    "ExternalAPI/Latency", latency_ms, "Milliseconds",
                    [("Service", service), ("Operation", operation)], at,
                )
            )
        self._extend(batch)
        logger.debug(
            "Metric: %s.%s %s%s latency=%.1fms",
            service, operation, status, f" ({error_type})" if error_type else "", latency_ms,
        )

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._record_call(service, operation, latency_ms=latency_ms)

    def record_failure(self, service: str, operation: str, error_type: str, latency_ms: float = 0) -> None:
        self._record_call(service, operation, latency_ms=latency_ms, error_type=error_type)

    def record_event(self, name: str, **dimensions: str) -> None:
        """Count a domain event such as ``RateLimited`` or ``ToolFailure``.

        Keyword names become title-cased dimension names, sorted.
        """
        dims = [(key.title(), str(value)) for key, value in sorted(dimensions.items())]
        self._extend([_datum(f"Core/{name}", 1, "Count", dims, datetime.now(UTC))])
        logger.debug("Metric: %s %s", name, dimensions)

    @contextmanager
    def timed(self, service: str, operation: str) -> Iterator[None]:
        """Record the wrapped call's outcome and latency; exceptions propagate."""
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(
                service, operation, type(exc).__name__, (time.perf_counter() - t0) * 1000,
            )
            raise
        self.record_success(service, operation, (time.perf_counter() - t0) * 1000)

    # ── Publishing ────────────────────────────────────────────────────

    def flush(self) -> int:
        """Push everything buffered so far.  Returns the number of data points sent."""
        with self._lock:
            pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled; dropped %d data points", len(pending))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for chunk in _chunks(pending, MAX_BATCH_SIZE):
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("CloudWatch publish failed after %d of %d data points", sent, len(pending))
        else:
            logger.info("Flushed %d metrics to CloudWatch", sent)
        return sent

    def close(self) -> None:
        """Stop the background thread and publish what is left."""
        self._stop.set()
        self.flush()

    def _extend(self, batch: list[Datum]) -> None:
        with self._lock:
            self._buffer.extend(batch)

    def _start_flush_thread(self) -> None:
        def _loop():
            while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.close)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()

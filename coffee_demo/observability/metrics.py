from __future__ import annotations

import queue
import re
import threading
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

import structlog
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource


logger = structlog.get_logger("metrics")

UNIT_SECONDS = "Seconds"
UNIT_COUNT = "Count"

REQUEST_DURATION = "RequestDuration"
REQUEST_COUNT = "RequestCount"
CREATED_COFFEE_ORDERS = "CreatedCoffeeOrders"
ERROR_COUNT = "ErrorCount"

# Upper bounds in seconds for duration histograms; the SDK defaults are sized for milliseconds.
DURATION_BUCKETS_SECONDS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def export_name(name: str) -> str:
    """OTLP instrument name for a metric point: ``RequestCount`` becomes ``request_count``.

    OpenTelemetry instrument names are case-insensitive and exported lowercased.
    """

    return _CAMEL_BOUNDARY.sub("_", name).lower()


@dataclass(frozen=True)
class MetricPoint:
    name: str
    value: float
    unit: str
    dimensions: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def request_metrics(endpoint: str, status_code: int, duration_seconds: float) -> list[MetricPoint]:
    """Duration and count points for one finished HTTP request.

    ``endpoint`` must be the route template, not the raw path.
    """

    return [
        MetricPoint(
            name=REQUEST_DURATION,
            value=float(duration_seconds),
            unit=UNIT_SECONDS,
            dimensions={"Endpoint": endpoint},
        ),
        MetricPoint(
            name=REQUEST_COUNT,
            value=1.0,
            unit=UNIT_COUNT,
            dimensions={"Endpoint": endpoint, "StatusCode": str(status_code)},
        ),
    ]


def order_created_metrics(user_name: str, coffee_type: str) -> list[MetricPoint]:
    return [
        MetricPoint(
            name=CREATED_COFFEE_ORDERS,
            value=1.0,
            unit=UNIT_COUNT,
            dimensions={"UserName": user_name, "CoffeeType": coffee_type},
        )
    ]


def error_metrics(error_type: str) -> list[MetricPoint]:
    return [
        MetricPoint(
            name=ERROR_COUNT,
            value=1.0,
            unit=UNIT_COUNT,
            dimensions={"ErrorType": error_type},
        )
    ]


class MetricsSink(Protocol):
    def send(self, points: Sequence[MetricPoint]) -> None: ...

    def shutdown(self) -> None: ...


@dataclass
class _LatencyAgg:
    count: int = 0
    sum_seconds: float = 0.0
    max_seconds: float = 0.0

    def observe(self, elapsed_seconds: float) -> None:
        self.count += 1
        self.sum_seconds += float(elapsed_seconds)
        if elapsed_seconds > self.max_seconds:
            self.max_seconds = float(elapsed_seconds)


class InMemoryMetricsSink:
    """Thread-safe, process-local sink (resets on restart).

    Used when metric export is disabled and by the tests. Totals and latency
    aggregates cover every point; only the most recent ``max_points`` points
    are kept individually.
    """

    def __init__(self, max_points: int = 1000) -> None:
        self._lock = Lock()
        self._points: deque[MetricPoint] = deque(maxlen=max(1, max_points))
        self._counters: dict[str, float] = {}
        self._latencies: dict[str, _LatencyAgg] = {}

    def send(self, points: Sequence[MetricPoint]) -> None:
        with self._lock:
            for point in points:
                self._points.append(point)
                if point.unit == UNIT_COUNT:
                    self._counters[point.name] = self._counters.get(point.name, 0.0) + point.value
                else:
                    self._latencies.setdefault(point.name, _LatencyAgg()).observe(point.value)

    @property
    def points(self) -> list[MetricPoint]:
        with self._lock:
            return list(self._points)

    def points_named(self, name: str) -> list[MetricPoint]:
        return [point for point in self.points if point.name == name]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "latency_seconds": {name: asdict(agg) for name, agg in self._latencies.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._points.clear()
            self._counters = {}
            self._latencies = {}

    def shutdown(self) -> None:
        return None


_OTEL_UNITS = {UNIT_SECONDS: "s", UNIT_COUNT: "1"}


class OtlpMetricsSink:
    """Records metric points on OpenTelemetry instruments exported over OTLP/HTTP.

    Count points feed counters, everything else feeds histograms; durations use
    seconds-scale buckets. Instruments are named with ``export_name``
    (``RequestCount`` is exported as ``request_count``). Dimensions become
    attributes. The point timestamp is not forwarded: the SDK stamps
    data points at collection time.
    """

    def __init__(
        self,
        namespace: str,
        resource_attributes: Mapping[str, str] | None = None,
        *,
        endpoint: str | None = None,
        reader: MetricReader | None = None,
        export_interval_millis: int = 60_000,
    ) -> None:
        if reader is None:
            if endpoint:
                exporter = OTLPMetricExporter(endpoint=f"{endpoint.rstrip('/')}/v1/metrics")
            else:
                exporter = OTLPMetricExporter()
            reader = PeriodicExportingMetricReader(exporter, export_interval_millis=export_interval_millis)

        self._provider = MeterProvider(
            resource=Resource.create(dict(resource_attributes or {})),
            metric_readers=[reader],
        )
        self._meter = self._provider.get_meter(namespace)
        self._lock = Lock()
        self._instruments: dict[str, Any] = {}

    def _instrument(self, point: MetricPoint) -> Any:
        with self._lock:
            instrument = self._instruments.get(point.name)
            if instrument is None:
                name = export_name(point.name)
                unit = _OTEL_UNITS.get(point.unit, point.unit)
                if point.unit == UNIT_COUNT:
                    instrument = self._meter.create_counter(name, unit=unit)
                elif point.unit == UNIT_SECONDS:
                    instrument = self._meter.create_histogram(
                        name, unit=unit, explicit_bucket_boundaries_advisory=DURATION_BUCKETS_SECONDS
                    )
                else:
                    instrument = self._meter.create_histogram(name, unit=unit)
                self._instruments[point.name] = instrument
            return instrument

    def send(self, points: Sequence[MetricPoint]) -> None:
        for point in points:
            instrument = self._instrument(point)
            if point.unit == UNIT_COUNT:
                instrument.add(point.value, attributes=point.dimensions)
            else:
                instrument.record(point.value, attributes=point.dimensions)

    def shutdown(self) -> None:
        self._provider.shutdown()


_STOP = None


class MetricsEmitter:
    """Fire-and-forget delivery of metric points through a bounded worker pool.

    ``emit`` never blocks: when the queue is full the batch is dropped and a
    warning is logged. Sink failures are logged and never retried.
    ``shutdown`` drains everything already queued before stopping the workers.
    """

    def __init__(self, sink: MetricsSink, workers: int = 2, queue_size: int = 1000) -> None:
        self.sink = sink
        self._workers = max(1, workers)
        self._queue: queue.Queue[list[MetricPoint] | None] = queue.Queue(maxsize=max(1, queue_size))
        self._threads: list[threading.Thread] = []
        self._state_lock = Lock()
        self._closed = False

    def start(self) -> None:
        with self._state_lock:
            if self._threads or self._closed:
                return
            for index in range(self._workers):
                thread = threading.Thread(target=self._run, name=f"metrics-emitter-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)

    def emit(self, *points: MetricPoint) -> None:
        if not points:
            return
        # Checked under the lock so no batch can land behind the shutdown sentinels.
        with self._state_lock:
            if self._closed:
                logger.debug("metrics_emitter_closed", dropped=len(points))
                return
            try:
                self._queue.put_nowait(list(points))
            except queue.Full:
                logger.warning(
                    "metrics_queue_full", dropped=len(points), metric_names=sorted({p.name for p in points})
                )

    def flush(self) -> None:
        """Block until every batch queued so far has been handed to the sink."""

        self._queue.join()

    def shutdown(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            threads = list(self._threads)

        for _ in threads:
            self._queue.put(_STOP)
        for thread in threads:
            thread.join()

        try:
            self.sink.shutdown()
        except Exception:
            logger.exception("metrics_sink_shutdown_failed")
        logger.info("metrics_emitter_shut_down")

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is _STOP:
                    return
                self.sink.send(batch)
            except Exception:
                logger.exception("metrics_send_failed", metric_names=sorted({p.name for p in batch or []}))
            finally:
                self._queue.task_done()

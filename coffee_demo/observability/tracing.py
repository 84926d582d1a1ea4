from __future__ import annotations

from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from threading import Lock
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from coffee_demo.errors import InitError


logger = structlog.get_logger("tracing")


def trace_id_of(span: trace.Span | None) -> str | None:
    """Hex trace id of ``span``, or None when it carries no valid context."""

    if span is None:
        return None
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return None
    return trace.format_trace_id(span_context.trace_id)


class Tracing:
    """Process-wide tracing handle.

    Owns its own TracerProvider and propagator; nothing is installed as the
    OpenTelemetry global, so tests can build an isolated instance around an
    in-memory exporter.
    """

    def __init__(self, provider: TracerProvider, propagator: CompositePropagator, tracer_name: str, version: str) -> None:
        self._provider = provider
        self._propagator = propagator
        self._tracer = provider.get_tracer(tracer_name, version)
        self._shutdown_lock = Lock()
        self._is_shut_down = False

    @contextmanager
    def start_span(
        self,
        name: str,
        context: Context | None = None,
        attributes: Mapping[str, Any] | None = None,
        kind: trace.SpanKind = trace.SpanKind.INTERNAL,
    ) -> Iterator[trace.Span]:
        """Start ``name`` as the current span; exceptions are recorded and mark it as an error."""

        with self._tracer.start_as_current_span(name, context=context, kind=kind, attributes=attributes) as span:
            yield span

    def extract(self, headers: Mapping[str, str]) -> Context:
        return self._propagator.extract(carrier=headers)

    def inject(self, headers: MutableMapping[str, str]) -> None:
        self._propagator.inject(carrier=headers)

    def shutdown(self) -> None:
        """Flush buffered spans and stop the exporter. Only the first call has an effect."""

        with self._shutdown_lock:
            if self._is_shut_down:
                logger.warning("tracing_already_shut_down")
                return
            self._is_shut_down = True
        self._provider.shutdown()
        logger.info("tracing_shut_down")


def init_tracing(
    service_name: str,
    service_version: str,
    environment: str,
    *,
    region: str | None = None,
    exporter: SpanExporter | None = None,
    endpoint: str | None = None,
    enabled: bool = True,
) -> Tracing:
    """Build the tracing handle for this process.

    Every span is sampled. Spans are batched to the OTLP/HTTP exporter unless an
    explicit ``exporter`` is given, in which case they are exported as soon as
    they end. With ``enabled=False`` spans are still created (so trace ids still
    correlate logs and response headers) but never exported.
    """

    try:
        attributes: dict[str, str] = {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
        if region:
            attributes["cloud.region"] = region

        provider = TracerProvider(resource=Resource.create(attributes), sampler=ALWAYS_ON)

        if exporter is not None:
            provider.add_span_processor(SimpleSpanProcessor(exporter))
        elif enabled:
            if endpoint:
                otlp = OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces")
            else:
                otlp = OTLPSpanExporter()
            provider.add_span_processor(BatchSpanProcessor(otlp))

        propagator = CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])
    except Exception as exc:
        raise InitError("Failed to initialize tracing") from exc

    logger.info(
        "tracing_initialized",
        service_name=service_name,
        service_version=service_version,
        environment=environment,
        exporting=exporter is not None or enabled,
    )
    return Tracing(provider, propagator, tracer_name=service_name, version=service_version)

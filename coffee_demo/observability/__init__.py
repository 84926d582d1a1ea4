"""Observability helpers for the coffee service.

Request ids + structlog contextvars, an explicitly constructed OpenTelemetry
tracing handle, and a background metrics emitter feeding an OTLP (or
in-memory) sink.
"""

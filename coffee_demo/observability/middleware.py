from __future__ import annotations

from time import perf_counter
from typing import Any, Callable

import structlog
from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.datastructures import URL, Headers, MutableHeaders
from starlette.responses import JSONResponse

from coffee_demo.observability.context import (
    REQUEST_ID_HEADER,
    TRACE_ID_HEADER,
    RequestContext,
    new_request_id,
)
from coffee_demo.observability.metrics import error_metrics, request_metrics
from coffee_demo.observability.tracing import trace_id_of
from coffee_demo.services.container import AppServices


UNMATCHED_ROUTE = "unmatched"


def _remote_addr(scope: dict[str, Any]) -> str:
    client = scope.get("client")
    if not client:
        return ""
    host, port = client
    return f"{host}:{port}"


def _route_template(scope: dict[str, Any]) -> str:
    # The router stores the matched route on the scope; its template bounds metric cardinality.
    route = scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class RequestPipelineMiddleware:
    """Wraps every request in recovery, correlation id, tracing, access logs and metrics.

    Stages, outer to inner: recovery, request id, trace span, request logs,
    request metrics, response header annotation.
    """

    def __init__(self, app: Callable[..., Any], services: AppServices) -> None:
        self.app = app
        self.services = services

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        ctx = RequestContext(
            request_id=headers.get(REQUEST_ID_HEADER) or new_request_id(),
            method=scope.get("method", ""),
            path=scope.get("path", ""),
            remote_addr=_remote_addr(scope),
            user_agent=headers.get("user-agent", ""),
        )
        scope.setdefault("state", {})["request_context"] = ctx

        response_started = False
        status_code = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal response_started, status_code

            if message.get("type") == "http.response.start" and not response_started:
                response_started = True
                status_code = int(message.get("status", 500))
                response_headers = MutableHeaders(scope=message)
                response_headers[REQUEST_ID_HEADER] = ctx.request_id
                if ctx.trace_id:
                    response_headers[TRACE_ID_HEADER] = ctx.trace_id

            await send(message)

        try:
            await self._traced(scope, receive, send_wrapper, ctx, headers, lambda: status_code)
        except Exception:
            structlog.get_logger("recovery").exception("unhandled_exception", response_started=response_started)
            if self.services.emitter is not None:
                self.services.emitter.emit(*error_metrics("unhandled_exception"))
            if not response_started:
                response = JSONResponse(status_code=500, content={"error": "Internal Server Error"})
                await response(scope, receive, send_wrapper)
        finally:
            structlog.contextvars.clear_contextvars()

    async def _traced(
        self,
        scope: dict[str, Any],
        receive: Callable[..., Any],
        send: Callable[..., Any],
        ctx: RequestContext,
        headers: Headers,
        current_status: Callable[[], int],
    ) -> None:
        tracing = self.services.tracing
        if tracing is None:
            raise RuntimeError("tracing is not initialized")

        parent = tracing.extract(headers)
        attributes = {
            "http.method": ctx.method,
            "http.url": str(URL(scope=scope)),
            "http.user_agent": ctx.user_agent,
            "http.remote_addr": ctx.remote_addr,
            "request.id": ctx.request_id,
        }

        with tracing.start_span(
            f"{ctx.method} {ctx.path}", context=parent, attributes=attributes, kind=SpanKind.SERVER
        ) as span:
            ctx.span = span
            ctx.trace_id = trace_id_of(span)

            structlog.contextvars.bind_contextvars(
                request_id=ctx.request_id,
                trace_id=ctx.trace_id,
                method=ctx.method,
                path=ctx.path,
            )
            access_log = structlog.get_logger("access")
            access_log.info(
                "request_started",
                remote_addr=ctx.remote_addr,
                user_agent=ctx.user_agent,
            )

            start = perf_counter()
            try:
                await self.app(scope, receive, send)
            finally:
                elapsed = perf_counter() - start
                status_code = current_status()

                span.set_attribute("http.status_code", status_code)
                if status_code >= 400:
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))
                else:
                    span.set_status(Status(StatusCode.OK))

                access_log.info(
                    "request_completed",
                    status_code=status_code,
                    duration_ms=round(elapsed * 1000.0, 2),
                )

                if self.services.emitter is not None:
                    self.services.emitter.emit(*request_metrics(_route_template(scope), status_code, elapsed))

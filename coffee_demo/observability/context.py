from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Request
from opentelemetry import trace


REQUEST_ID_HEADER = "X-Request-ID"
TRACE_ID_HEADER = "X-Trace-ID"


def new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RequestContext:
    """Per-request correlation data, owned by the request pipeline.

    Created when a request enters the pipeline and lent to handlers through
    ``get_request_context``; never shared between requests.
    """

    request_id: str
    method: str
    path: str
    remote_addr: str = ""
    user_agent: str = ""
    span: trace.Span | None = None
    trace_id: str | None = None


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "request_context", None)
    if ctx is None:
        # Only reachable when a handler runs without the pipeline mounted.
        ctx = RequestContext(request_id=new_request_id(), method=request.method, path=request.url.path)
        request.state.request_context = ctx
    return ctx

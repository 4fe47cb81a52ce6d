#!/usr/bin/env python3
"""Tracing Middleware with W3C context propagation and HTTP server spans"""

from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from opentelemetry import propagate, trace
from opentelemetry.context import attach, detach
from opentelemetry.trace import SpanKind

TRACER_NAME = "lower.middleware"
TRACER_VERSION = "1.0"


def request_attributes(request: Request) -> dict:
    """HTTP semantic attributes recorded on every server span"""
    return {
        "component": "http",
        "http.method": request.method,
        "http.route": request.url.path,
        "http.url": str(request.url),
    }


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Extracts the propagated trace context from incoming headers and wraps the
    rest of the handler chain in a server span named after the request path
    """

    def __init__(self, app, tracer_provider: Optional[trace.TracerProvider] = None):
        super().__init__(app)
        # Without an explicit provider this resolves through the global proxy
        self.tracer = trace.get_tracer(TRACER_NAME, TRACER_VERSION, tracer_provider=tracer_provider)

    async def dispatch(self, request: Request, call_next):
        # Extract W3C context from headers, empty context when absent or malformed
        context = propagate.extract(request.headers)
        token = attach(context)

        try:
            # Span kind MUST be SERVER for an HTTP server span
            with self.tracer.start_as_current_span(
                request.url.path,
                kind=SpanKind.SERVER,
                attributes=request_attributes(request),
            ) as span:
                response = await call_next(request)
                span.set_attribute("http.status_code", response.status_code)
        finally:
            detach(token)

        return response

#!/usr/bin/env python3
"""
lower - random lowercase character service with W3C trace propagation
"""

import os
import random
import string
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from opentelemetry import metrics, trace
import uvicorn

from otel_config import (
    SERVICE_CONFIG, initialize_opentelemetry, shutdown_opentelemetry,
    get_correlated_logger
)
from middleware import TracingMiddleware
from metrics import LowerMetrics
from trace_correlation import traced_operation

CHARS = list(string.ascii_lowercase)

logger = get_correlated_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_telemetry = app.state.owns_telemetry
    if owns_telemetry:
        initialize_opentelemetry()

    try:
        yield
    finally:
        if owns_telemetry:
            shutdown_opentelemetry()


def create_app(tracer_provider: Optional[trace.TracerProvider] = None,
               meter_provider: Optional[metrics.MeterProvider] = None) -> FastAPI:
    """
    Build the application. Injected providers are used as is; otherwise the
    process-wide providers are configured at startup and flushed at shutdown.
    """
    app = FastAPI(title="lower", version=SERVICE_CONFIG["service_version"], lifespan=lifespan)

    app.state.owns_telemetry = tracer_provider is None and meter_provider is None
    app.state.tracer_provider = tracer_provider
    app.state.metrics = LowerMetrics(metrics.get_meter(__name__, meter_provider=meter_provider))

    app.add_middleware(TracingMiddleware, tracer_provider=tracer_provider)

    @app.get("/")
    async def random_char(request: Request):
        state = request.app.state

        with traced_operation("choose_char", tracer_provider=state.tracer_provider) as span:
            with state.metrics.time_operation("char_selection"):
                char = random.choice(CHARS)
            span.set_attribute("lower.char", char)

        state.metrics.record_char_served(char)
        logger.debug_with_context(
            "Character served",
            extra_attributes={"char": char, "operation": "random_char"}
        )
        return {"char": char}

    return app


app = create_app()


def main():
    import argparse

    parser = argparse.ArgumentParser(description="lower character service")
    parser.add_argument("--host", default=os.getenv("SERVER_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("SERVER_PORT", "5000")))
    args = parser.parse_args()

    print(f"🚀 lower service on {args.host}:{args.port}")
    print(f"📡 OTLP Endpoint: {SERVICE_CONFIG['otlp_endpoint']} ({SERVICE_CONFIG['otlp_protocol']})")

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
OpenTelemetry Configuration for the lower service
Process-wide tracer/meter providers, W3C context propagation and correlated logging
"""

import os
import logging
from typing import Optional, Tuple, Dict, Any
from urllib.parse import urlparse
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# OpenTelemetry imports
from opentelemetry import trace, metrics, propagate
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader, ConsoleMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HTTPSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter as HTTPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GRPCSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter as GRPCMetricExporter

# Propagation - W3C standard + fallbacks
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.b3 import B3MultiFormat, B3SingleFormat
from opentelemetry.propagators.jaeger import JaegerPropagator

SCHEMA_URL = "https://opentelemetry.io/schemas/1.21.0"

EXPORTER_SELECTORS = ("otlp", "console", "none")
OTLP_PROTOCOLS = ("http/protobuf", "grpc")

# Global state management
_initialized = False
_tracer_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None

logger = logging.getLogger(__name__)


def load_service_config() -> Dict[str, Any]:
    """Read the service configuration from the environment"""
    return {
        "service_name": os.getenv("OTEL_SERVICE_NAME", "lower"),
        "service_version": os.getenv("OTEL_SERVICE_VERSION", "1.0.0"),
        "environment": os.getenv("OTEL_ENVIRONMENT", "development"),
        "traces_exporter": os.getenv("OTEL_TRACES_EXPORTER", "otlp").strip().lower(),
        "metrics_exporter": os.getenv("OTEL_METRICS_EXPORTER", "otlp").strip().lower(),
        "otlp_protocol": os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "http/protobuf").strip().lower(),
        "otlp_endpoint": os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318"),
        "resource_attributes": os.getenv("OTEL_RESOURCE_ATTRIBUTES", ""),
        "log_level": os.getenv("OTEL_LOG_LEVEL", "DEBUG").upper(),
        "batch_timeout": 2000,
        "batch_size": 64,
        "queue_size": 2048,
        "metric_interval": 10000,
    }


# Service configuration from environment
SERVICE_CONFIG = load_service_config()


def _signal_endpoint(endpoint: str, signal_path: str) -> str:
    """OTLP/HTTP exporters take the full URL of the signal"""
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith(signal_path):
        return endpoint
    return f"{endpoint}{signal_path}"


def _is_insecure(endpoint: str) -> bool:
    return urlparse(endpoint).scheme != "https"


def _check_selector(name: str, selector: str, protocol: str):
    if selector not in EXPORTER_SELECTORS:
        raise ValueError(
            f"Unsupported {name} exporter {selector!r}, expected one of {', '.join(EXPORTER_SELECTORS)}"
        )
    if selector == "otlp" and protocol not in OTLP_PROTOCOLS:
        raise ValueError(
            f"Unsupported OTLP protocol {protocol!r}, expected one of {', '.join(OTLP_PROTOCOLS)}"
        )


def build_span_exporter(config: Optional[Dict[str, Any]] = None):
    """Return the span exporter selected by the configuration, or None when disabled"""
    config = config or SERVICE_CONFIG
    selector = config["traces_exporter"]
    protocol = config["otlp_protocol"]
    _check_selector("traces", selector, protocol)

    if selector == "none":
        return None
    if selector == "console":
        return ConsoleSpanExporter(service_name=config["service_name"])

    endpoint = config["otlp_endpoint"]
    if protocol == "grpc":
        return GRPCSpanExporter(endpoint=endpoint, insecure=_is_insecure(endpoint))
    return HTTPSpanExporter(endpoint=_signal_endpoint(endpoint, "/v1/traces"))


def build_metric_exporter(config: Optional[Dict[str, Any]] = None):
    """Return the metric exporter selected by the configuration, or None when disabled"""
    config = config or SERVICE_CONFIG
    selector = config["metrics_exporter"]
    protocol = config["otlp_protocol"]
    _check_selector("metrics", selector, protocol)

    if selector == "none":
        return None
    if selector == "console":
        return ConsoleMetricExporter()

    endpoint = config["otlp_endpoint"]
    if protocol == "grpc":
        return GRPCMetricExporter(endpoint=endpoint, insecure=_is_insecure(endpoint))
    return HTTPMetricExporter(endpoint=_signal_endpoint(endpoint, "/v1/metrics"))


def setup_propagators():
    """
    Setup propagators following W3C standards with fallbacks.
    TraceContext is applied last so a valid traceparent wins over legacy headers.
    """
    propagators = [
        B3MultiFormat(),                 # B3 Multi-header (Zipkin compatibility)
        B3SingleFormat(),                # B3 Single-header
        JaegerPropagator(),              # Jaeger compatibility
        W3CBaggagePropagator(),          # W3C Baggage
        TraceContextTextMapPropagator(),  # W3C Trace Context (primary)
    ]

    composite_propagator = CompositePropagator(propagators)
    propagate.set_global_textmap(composite_propagator)
    return composite_propagator


def create_resource(service_name: str, service_version: str, environment: str,
                    config: Optional[Dict[str, Any]] = None) -> Resource:
    """Create OpenTelemetry resource describing this service instance"""
    config = config or SERVICE_CONFIG

    attributes = {
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
        "service.instance.id": f"{service_name}-{os.getenv('HOSTNAME', os.getpid())}",
        "process.pid": os.getpid(),
        "host.name": os.getenv("HOSTNAME", "localhost"),
    }

    # Add custom resource attributes from environment
    if config["resource_attributes"]:
        for attr in config["resource_attributes"].split(","):
            if "=" in attr:
                key, value = attr.strip().split("=", 1)
                attributes[key.strip()] = value.strip()

    return Resource.create(attributes)


class CorrelatedFormatter(logging.Formatter):
    """Formatter stamping each record with the current trace and span ids"""

    def format(self, record):
        current_span = trace.get_current_span()
        span_context = current_span.get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        record.service_name = os.getenv("OTEL_SERVICE_NAME", "unknown")
        return super().format(record)


LOG_FORMAT = (
    "%(asctime)s [%(service_name)s] [%(levelname)s] "
    "[trace_id=%(trace_id)s span_id=%(span_id)s] %(name)s: %(message)s"
)


def _setup_correlated_logging(level: str):
    """Setup console logging with automatic trace correlation"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    # Prevent duplicate handlers on re-initialization
    for handler in root_logger.handlers:
        if isinstance(handler.formatter, CorrelatedFormatter):
            return

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(CorrelatedFormatter(fmt=LOG_FORMAT))
    root_logger.addHandler(console_handler)


def _initialize_global_providers(resource: Resource, config: Dict[str, Any]):
    """Initialize global trace and metric providers"""
    global _tracer_provider, _meter_provider

    tracer_provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(1.0))
    )

    span_exporter = build_span_exporter(config)
    if span_exporter is not None:
        # Batching keeps the request path free of exporter I/O
        tracer_provider.add_span_processor(BatchSpanProcessor(
            span_exporter,
            max_queue_size=config["queue_size"],
            max_export_batch_size=config["batch_size"],
            export_timeout_millis=10000,
            schedule_delay_millis=config["batch_timeout"]
        ))

    trace.set_tracer_provider(tracer_provider)

    metric_readers = []
    metric_exporter = build_metric_exporter(config)
    if metric_exporter is not None:
        metric_readers.append(PeriodicExportingMetricReader(
            exporter=metric_exporter,
            export_interval_millis=config["metric_interval"]
        ))

    meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
    metrics.set_meter_provider(meter_provider)

    _tracer_provider = tracer_provider
    _meter_provider = meter_provider


def initialize_opentelemetry(
    service_name: Optional[str] = None,
    service_version: Optional[str] = None,
    environment: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None
) -> Tuple[trace.Tracer, metrics.Meter]:
    """
    Initialize OpenTelemetry once per process

    Args:
        service_name: Name of the service
        service_version: Version of the service
        environment: Deployment environment
        config: Configuration mapping, defaults to SERVICE_CONFIG

    Returns:
        Tuple of (tracer, meter) instances
    """
    global _initialized

    config = config or SERVICE_CONFIG
    current_service_name = service_name or config["service_name"]
    current_service_version = service_version or config["service_version"]
    current_environment = environment or config["environment"]

    if not _initialized:
        # Set service name in environment for logging
        os.environ["OTEL_SERVICE_NAME"] = current_service_name

        _setup_correlated_logging(config["log_level"])
        setup_propagators()

        resource = create_resource(current_service_name, current_service_version, current_environment, config)
        _initialize_global_providers(resource, config)
        _initialized = True

        logger.debug("Using OTLP endpoint: %s", config["otlp_endpoint"])
        logger.info(
            "OpenTelemetry initialized for %s (traces=%s, metrics=%s, protocol=%s)",
            current_service_name, config["traces_exporter"], config["metrics_exporter"], config["otlp_protocol"]
        )

    tracer = trace.get_tracer(current_service_name, current_service_version, schema_url=SCHEMA_URL)
    meter = metrics.get_meter(current_service_name, current_service_version, schema_url=SCHEMA_URL)
    return tracer, meter


def get_correlated_logger(name: str) -> logging.Logger:
    """Get a logger that automatically includes trace correlation"""
    logger = logging.getLogger(name)

    def log_with_context(level, msg, extra_attributes=None, **kwargs):
        extra = dict(kwargs.get("extra", {}))

        # Add current trace context
        extra.update(get_current_trace_context())
        extra["service_name"] = os.getenv("OTEL_SERVICE_NAME", "unknown")

        if extra_attributes:
            extra.update(extra_attributes)

        kwargs["extra"] = extra
        logger.log(level, msg, **kwargs)

    logger.info_with_context = lambda msg, **kwargs: log_with_context(logging.INFO, msg, **kwargs)
    logger.error_with_context = lambda msg, **kwargs: log_with_context(logging.ERROR, msg, **kwargs)
    logger.warning_with_context = lambda msg, **kwargs: log_with_context(logging.WARNING, msg, **kwargs)
    logger.debug_with_context = lambda msg, **kwargs: log_with_context(logging.DEBUG, msg, **kwargs)

    return logger


def inject_trace_context(headers: Optional[dict] = None) -> dict:
    """Inject the current trace context into outbound HTTP headers"""
    if headers is None:
        headers = {}

    propagate.inject(headers)
    return headers


def extract_trace_context(headers: Optional[dict]):
    """Extract trace context from HTTP headers, None when there are no headers"""
    if not headers:
        return None

    return propagate.extract(headers)


def get_current_trace_context() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return {
            "trace_id": format(span_context.trace_id, "032x"),
            "span_id": format(span_context.span_id, "016x"),
            "trace_flags": format(span_context.trace_flags, "02x"),
        }
    return {"trace_id": "", "span_id": "", "trace_flags": ""}


def get_current_trace_id() -> str:
    return get_current_trace_context()["trace_id"]


def get_current_span_id() -> str:
    return get_current_trace_context()["span_id"]


def shutdown_opentelemetry():
    """
    Flush buffered telemetry and shut the providers down.
    Global providers are set once per process, so telemetry is not restarted afterwards.
    """
    global _tracer_provider, _meter_provider

    if _tracer_provider is None and _meter_provider is None:
        return

    try:
        if _tracer_provider is not None:
            _tracer_provider.force_flush(timeout_millis=5000)
            _tracer_provider.shutdown()

        if _meter_provider is not None:
            _meter_provider.force_flush(timeout_millis=5000)
            _meter_provider.shutdown()

        logger.info("OpenTelemetry shutdown complete")
    except Exception as e:
        logger.warning("Error during OpenTelemetry shutdown: %s", e)
    finally:
        _tracer_provider = None
        _meter_provider = None


__all__ = [
    "SERVICE_CONFIG",
    "load_service_config",
    "build_span_exporter",
    "build_metric_exporter",
    "setup_propagators",
    "create_resource",
    "CorrelatedFormatter",
    "initialize_opentelemetry",
    "get_correlated_logger",
    "inject_trace_context",
    "extract_trace_context",
    "get_current_trace_context",
    "get_current_trace_id",
    "get_current_span_id",
    "shutdown_opentelemetry",
]

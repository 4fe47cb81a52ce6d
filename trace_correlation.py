import logging
from contextlib import contextmanager
from typing import Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)


@contextmanager
def traced_operation(operation_name: str, tracer_provider: Optional[trace.TracerProvider] = None, **attributes):
    """Internal span under whatever context is current, e.g. the request span"""
    tracer = trace.get_tracer(__name__, tracer_provider=tracer_provider)
    with tracer.start_as_current_span(
        operation_name,
        kind=SpanKind.INTERNAL,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            logger.debug("Operation %s failed: %s", operation_name, e)
            raise

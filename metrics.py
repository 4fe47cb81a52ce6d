#!/usr/bin/env python3
"""
Metrics for the lower service
Counts served characters and times the selection
"""

import time
from contextlib import contextmanager
from typing import Optional

from opentelemetry import metrics
from opentelemetry.metrics import Meter


class LowerMetrics:
    """Service specific metrics"""

    def __init__(self, meter: Optional[Meter] = None):
        self.meter = meter or metrics.get_meter(__name__)

        self.chars_served = self.meter.create_counter(
            name="lower.chars.served.total",
            description="Total number of characters served",
            unit="1"
        )

        self.selection_duration = self.meter.create_histogram(
            name="lower.char.selection.duration",
            description="Time spent choosing a character",
            unit="s"
        )

        self.errors_total = self.meter.create_counter(
            name="lower.errors.total",
            description="Total number of errors",
            unit="1"
        )

    @contextmanager
    def time_operation(self, operation_type: str, **attributes):
        """Context manager to time operations and record metrics"""
        start_time = time.perf_counter()
        operation_attributes = {"operation_type": operation_type, **attributes}

        try:
            yield
        except Exception as e:
            error_attributes = {**operation_attributes, "error_type": type(e).__name__}
            self.errors_total.add(1, error_attributes)
            raise
        finally:
            duration = time.perf_counter() - start_time
            self.selection_duration.record(duration, operation_attributes)

    def record_char_served(self, char: str):
        self.chars_served.add(1, {"char": char})

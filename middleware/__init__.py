from .trace_middleware import TracingMiddleware, request_attributes

__all__ = ["TracingMiddleware", "request_attributes"]

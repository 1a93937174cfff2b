"""Observability package.

Metric registry, health aggregation, request instrumentation middleware,
structured logging and request-scoped context.
"""

__all__ = [
    "context",
    "health",
    "logger",
    "metrics",
    "middleware",
]

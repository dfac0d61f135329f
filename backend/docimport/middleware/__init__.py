"""
Middleware Package

Contains FastAPI middleware for:
- Prometheus metrics collection
- Import pipeline counters
"""

from docimport.middleware.metrics import (
    PrometheusMiddleware,
    setup_metrics,
    REQUEST_LATENCY,
    REQUEST_COUNT,
    ACTIVE_REQUESTS,
    JOB_TRANSITIONS,
    CALLBACKS_IGNORED,
)

__all__ = [
    "PrometheusMiddleware",
    "setup_metrics",
    "REQUEST_LATENCY",
    "REQUEST_COUNT",
    "ACTIVE_REQUESTS",
    "JOB_TRANSITIONS",
    "CALLBACKS_IGNORED",
]

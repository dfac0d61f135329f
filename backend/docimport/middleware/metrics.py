"""
Prometheus Metrics Middleware

Provides request/response metrics for monitoring:
- HTTP request latency
- Request count by endpoint and status
- Active request gauge
- Import pipeline counters (submissions, transitions, ignored callbacks)

Usage:
    from docimport.middleware.metrics import setup_metrics

    # In main.py
    app = FastAPI()
    setup_metrics(app)

Metrics Endpoint:
    GET /metrics - Prometheus-format metrics
"""

import time
import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
    REGISTRY,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint", "status"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

ACTIVE_REQUESTS = Gauge(
    "http_requests_active",
    "Number of active HTTP requests",
    ["method", "endpoint"]
)

# Import pipeline metrics
JOBS_SUBMITTED = Counter(
    "import_jobs_submitted_total",
    "Documents accepted for import"
)

JOB_TRANSITIONS = Counter(
    "import_job_transitions_total",
    "Import job lifecycle transitions",
    ["state"]
)

CALLBACKS_IGNORED = Counter(
    "import_callbacks_ignored_total",
    "Extraction callbacks absorbed without changing a job",
    ["reason"]  # finalized, out_of_range
)

SECTIONS_RECEIVED = Counter(
    "import_sections_received_total",
    "Section results received from the extraction service",
    ["status"]
)

APPLY_DURATION = Histogram(
    "import_apply_duration_seconds",
    "Time to merge an import into its target document",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

FIELDS_WRITTEN = Counter(
    "import_fields_written_total",
    "Target document field writes during apply",
    ["outcome"]  # written, skipped, failed
)


# Not recorded in the request metrics
UNTRACKED_ENDPOINTS = frozenset({"/metrics", "/health"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for Prometheus metrics collection.

    Records:
    - Request latency
    - Request count by status code
    - Active request count
    """

    def __init__(self, app: FastAPI, app_name: str = "docimport"):
        super().__init__(app)
        self.app_name = app_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        """Process request and record metrics."""
        # Route template, so every job id shares one label
        endpoint = self._get_endpoint(request)
        method = request.method

        if endpoint in UNTRACKED_ENDPOINTS:
            return await call_next(request)

        ACTIVE_REQUESTS.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status = str(response.status_code)
        except Exception as e:
            status = "500"
            logger.error(f"Request error: {e}")
            raise
        finally:
            duration = time.perf_counter() - start_time

            # Recorded for failed requests too
            REQUEST_LATENCY.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).observe(duration)

            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            ACTIVE_REQUESTS.labels(
                method=method,
                endpoint=endpoint
            ).dec()

        return response

    def _get_endpoint(self, request: Request) -> str:
        """
        Get normalized endpoint path from request.

        Uses route pattern (e.g., /imports/{job_id}) instead of
        actual path to avoid high cardinality.
        """
        # Mounted routers report their full prefixed path
        for route in request.app.routes:
            match, _ = route.matches(request.scope)
            if match == Match.FULL:
                return route.path

        # Unknown paths (404s) keep their raw path
        return request.url.path


def metrics_endpoint(request: Request) -> Response:
    """Endpoint handler for Prometheus metrics scraping."""
    return PlainTextResponse(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


def setup_metrics(app: FastAPI) -> None:
    """
    Configure Prometheus metrics for FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(PrometheusMiddleware, app_name="docimport")
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])

    logger.info("Prometheus metrics configured")


# ==================== Helper Functions ====================

def record_submission() -> None:
    JOBS_SUBMITTED.inc()


def record_transition(state: str) -> None:
    """Record a job entering a lifecycle state."""
    JOB_TRANSITIONS.labels(state=state).inc()


def record_ignored_callback(reason: str) -> None:
    CALLBACKS_IGNORED.labels(reason=reason).inc()


def record_section_received(status: str) -> None:
    SECTIONS_RECEIVED.labels(status=status).inc()


def record_apply_duration(duration: float) -> None:
    APPLY_DURATION.observe(duration)


def record_field_write(outcome: str) -> None:
    FIELDS_WRITTEN.labels(outcome=outcome).inc()

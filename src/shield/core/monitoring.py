"""Prometheus metrics for HTTP traffic and the Procore integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_sync_result(): Per-outcome item counts and run duration for a sync run
- procore_compliance_pushes_total / procore_token_refreshes_total counters
- get_metrics_response(): Prometheus exposition for the /metrics route
- init_sentry(): Sentry error reporting for unexpected failures
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Procore Metrics ──────────────────────────────────────────────────────────

procore_sync_items_total = Counter(
    "procore_sync_items_total",
    "Procore sync items by terminal outcome",
    ["sync_type", "outcome"],
)

procore_sync_duration_seconds = Histogram(
    "procore_sync_duration_seconds",
    "Procore sync run duration in seconds",
    ["sync_type"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

procore_compliance_pushes_total = Counter(
    "procore_compliance_pushes_total",
    "Compliance push attempts",
    ["pushed"],
)

procore_token_refreshes_total = Counter(
    "procore_token_refreshes_total",
    "Procore access token refresh attempts",
    ["result"],
)


def record_sync_result(
    sync_type: str,
    created: int,
    updated: int,
    skipped: int,
    errors: int,
    duration_ms: int,
) -> None:
    """Record one finished sync run."""
    for outcome, count in (
        ("created", created),
        ("updated", updated),
        ("skipped", skipped),
        ("error", errors),
    ):
        if count:
            procore_sync_items_total.labels(sync_type=sync_type, outcome=outcome).inc(count)
    procore_sync_duration_seconds.labels(sync_type=sync_type).observe(duration_ms / 1000)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK for the API process.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    # Set sample rate based on environment
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

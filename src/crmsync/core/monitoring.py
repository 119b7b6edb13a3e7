"""Prometheus metrics, Sentry integration, and remote API call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with user-aware before_send callback
- record_pipedrive_call(): Counter/histogram update for one remote attempt
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import re
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

# ── Pipedrive Metrics ────────────────────────────────────────────────────────

pipedrive_requests_total = Counter(
    "pipedrive_requests_total",
    "Total Pipedrive API attempts",
    ["endpoint", "method", "outcome"],
)

pipedrive_request_duration_seconds = Histogram(
    "pipedrive_request_duration_seconds",
    "Pipedrive API attempt duration in seconds",
    ["endpoint", "method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

bulk_sync_records_total = Counter(
    "bulk_sync_records_total",
    "Records processed by bulk syncs",
    ["sync_type", "result"],
)

_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")


def normalize_endpoint(path: str) -> str:
    """Collapse numeric path segments so metric label cardinality stays bounded."""
    return _ID_SEGMENT.sub("/{id}", path.split("?", 1)[0])


def record_pipedrive_call(endpoint: str, method: str, outcome: str, duration: float) -> None:
    """Record one remote API attempt."""
    label = normalize_endpoint(endpoint)
    pipedrive_requests_total.labels(endpoint=label, method=method, outcome=outcome).inc()
    pipedrive_request_duration_seconds.labels(endpoint=label, method=method).observe(duration)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = normalize_endpoint(request.url.path)

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


def _scrub_api_token(event: dict, hint: dict) -> dict:
    """Drop the api_token query parameter from captured request URLs."""
    request = event.get("request") or {}
    query = request.get("query_string")
    if isinstance(query, str) and "api_token=" in query:
        request["query_string"] = re.sub(r"api_token=[^&]*", "api_token=[redacted]", query)
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=_scrub_api_token,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

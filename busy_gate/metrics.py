"""Prometheus metrics for busy-gate.

Metrics goals:
- low-cardinality labels (never subject or requester ids)
- visibility into lock contention, quota exhaustion, listing drift and
  fail-closed storage
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "busy_gate_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "busy_gate_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
ENGAGEMENTS_TOTAL = Counter(
    "busy_gate_engagements_total",
    "Engagement lock transitions by outcome",
    ["operation", "outcome"],
)
ALLOCATIONS_TOTAL = Counter(
    "busy_gate_allocations_total",
    "Quota allocation attempts by outcome",
    ["outcome"],
)
PROPAGATIONS_TOTAL = Counter(
    "busy_gate_propagations_total",
    "Listing busy-flag pushes by result",
    ["busy", "result"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "busy_gate_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
LOCKDOWN_ACTIVE = Gauge(
    "busy_gate_lockdown_active",
    "1 if the store is in lockdown / fail-closed mode",
)


def record_engagement(operation: str, outcome: str) -> None:
    ENGAGEMENTS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_allocation(outcome: str) -> None:
    ALLOCATIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_propagation(busy: bool, ok: bool) -> None:
    PROPAGATIONS_TOTAL.labels(busy="true" if busy else "false", result="ok" if ok else "failed").inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    Disabled entirely with BUSY_METRICS_ENABLED=0.
    """
    if not _env_bool("BUSY_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return PlainTextResponse("FORBIDDEN", status_code=403)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

"""Prometheus metrics for the agent identity gateway.

Metrics goals:
- low-cardinality labels (never keys, names, session ids or nonces)
- visibility into verification outcomes, auth rejections and sweeps

Set AGENTID_METRICS_ENABLED=0 to skip instrumentation.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "agentid_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "agentid_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
VERIFICATIONS_STARTED_TOTAL = Counter(
    "agentid_verifications_started_total",
    "Verification sessions opened",
)
PROOF_CALLBACKS_TOTAL = Counter(
    "agentid_proof_callbacks_total",
    "Proof callbacks by outcome",
    ["outcome"],
)
AUTH_TOTAL = Counter(
    "agentid_signed_requests_total",
    "Signed-request authentications by outcome (error code or 'ok')",
    ["outcome"],
)
SWEEP_REMOVED_TOTAL = Counter(
    "agentid_sweep_removed_total",
    "Entries removed or expired by periodic sweeps",
    ["sweep"],
)
NONCE_LEDGER_SIZE = Gauge(
    "agentid_nonce_ledger_entries",
    "Live entries in the nonce ledger",
)


def record_verification_started() -> None:
    VERIFICATIONS_STARTED_TOTAL.inc()


def record_proof_callback(outcome: str) -> None:
    PROOF_CALLBACKS_TOTAL.labels(outcome=str(outcome)).inc()


def record_auth(outcome: str) -> None:
    AUTH_TOTAL.labels(outcome=str(outcome)).inc()


def record_sweep(sweep: str, removed: int) -> None:
    if removed:
        SWEEP_REMOVED_TOTAL.labels(sweep=str(sweep)).inc(int(removed))


def set_nonce_ledger_size(n: int) -> None:
    NONCE_LEDGER_SIZE.set(float(n))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("AGENTID_METRICS_ENABLED", True):
        return

    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
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

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

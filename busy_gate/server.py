"""HTTP surface for busy-gate (FastAPI).

Every failure is returned with the same JSON envelope
`{code, message, retryable, http_status, details}`; lock contention on
/v1/engage/try is a 409 whose details name the current holder.
"""

from __future__ import annotations

import logging
import math
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import metrics
from .clock import MS_IN_HOUR, MS_IN_SECOND, ms_to_iso
from .engagement import ALREADY_HELD
from .errors import (
    BUSY_E_ALREADY_HELD,
    BUSY_E_BAD_REQUEST,
    BUSY_E_LOCKDOWN_ACTIVE,
    BUSY_E_RATE_LIMITED,
    BusyGateError,
    busy_error,
)
from .gateway import BusyGate
from .lockdown import StorageLockdownError
from .ops_stats import OPS_STATS
from .ratelimit import PollLimiter

logger = logging.getLogger("busy_gate.server")


class AllocateRequest(BaseModel):
    """Allocate busy time; give either `hours` or `requested_ms`."""
    subject: str
    requester: str
    hours: Optional[float] = None
    requested_ms: Optional[int] = None


class ReleaseAllocationRequest(BaseModel):
    allocation_id: str


class EnableRequest(BaseModel):
    subject: str


class EngageTryRequest(BaseModel):
    subject: str
    requester: str
    ttl_seconds: Optional[float] = None  # <= 0 or missing: no expiry
    context: Optional[str] = None


class HeartbeatRequest(BaseModel):
    subject: str
    requester: str
    extend_seconds: float


class EngageReleaseRequest(BaseModel):
    subject: str
    requester: str
    record_history: bool = True
    value: float = 0.0
    notes: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _build_limiter(env_name: str, default_spec: str) -> Optional[PollLimiter]:
    spec = os.getenv(env_name, default_spec).strip()
    if not spec or spec in ("0", "off", "disabled", "false"):
        return None
    try:
        max_keys = int(os.getenv("BUSY_RATE_LIMIT_MAX_KEYS", "20000") or "20000")
        return PollLimiter.from_text(spec, max_requesters=max_keys)
    except ValueError as e:
        logger.warning("Invalid rate limit %s=%r: %s (disabled)", env_name, spec, e)
        return None


def _token_ok(req: Request, token: str, header: str) -> bool:
    authz = (req.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
        return True
    return (req.headers.get(header) or "").strip() == token


_MAX_DURATION_MS = 366 * 24 * MS_IN_HOUR


def _duration_ms(value: float, unit_ms: int, name: str) -> int:
    """Convert a caller-supplied duration to ms; non-finite or absurd values are BAD_REQUEST."""
    v = float(value)
    if not math.isfinite(v) or abs(v) * unit_ms > _MAX_DURATION_MS:
        raise busy_error(BUSY_E_BAD_REQUEST, f"{name} is out of range", **{name: str(value)})
    return int(round(v * unit_ms))


def create_app(gate: Optional[BusyGate] = None) -> FastAPI:
    """Create the FastAPI application around a BusyGate (built from env if omitted)."""
    from . import __version__ as busy_version

    owns_gate = gate is None
    if gate is None:
        gate = BusyGate()

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        yield
        if owns_gate:
            gate.close()

    app = FastAPI(
        title="busy-gate",
        description="Exclusive engagement locks and daily busy quota for worker identities",
        version=busy_version,
        lifespan=_lifespan,
    )
    app.state.gate = gate

    @app.exception_handler(BusyGateError)
    async def _busy_error_handler(request: Request, exc: BusyGateError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        OPS_STATS.record_storage_lockdown()
        metrics.set_lockdown_active(True)
        err = busy_error(BUSY_E_LOCKDOWN_ACTIVE, "store in lockdown, retry later")
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("BUSY_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        return not metrics_token or _token_ok(req, metrics_token, "X-Metrics-Token")

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    try_limiter = _build_limiter("BUSY_RATE_LIMIT_ENGAGE_TRY", "120/m")

    # ---------------------------
    # Quota
    # ---------------------------

    @app.post("/v1/quota/allocate")
    def allocate(request: AllocateRequest):
        if request.requested_ms is not None:
            requested_ms = int(request.requested_ms)
        elif request.hours is not None:
            requested_ms = _duration_ms(request.hours, MS_IN_HOUR, "hours")
        else:
            raise busy_error(BUSY_E_BAD_REQUEST, "hours or requested_ms is required")
        grant = gate.allocate(request.subject, request.requester, requested_ms)
        return grant.as_dict()

    @app.post("/v1/quota/release")
    def release_allocation(request: ReleaseAllocationRequest):
        return gate.release_allocation(request.allocation_id).as_dict()

    @app.get("/v1/quota/status/{subject}")
    def quota_status(subject: str):
        return gate.quota_status(subject).as_dict()

    @app.post("/v1/quota/enable")
    def manual_enable(request: EnableRequest):
        return gate.manual_enable(request.subject).as_dict()

    @app.get("/v1/quota/allocations/{subject}")
    def list_allocations(subject: str, limit: int = Query(50, ge=1, le=500)):
        records = gate.list_allocations(subject, limit=limit)
        return {"subject": subject, "allocations": [r.as_dict() for r in records]}

    # ---------------------------
    # Engagement lock
    # ---------------------------

    @app.post("/v1/engage/try")
    def engage_try(request: EngageTryRequest):
        if try_limiter is not None and not try_limiter.allow(request.requester):
            OPS_STATS.record_rate_limited("engage_try")
            metrics.record_rate_limited("engage_try")
            raise busy_error(BUSY_E_RATE_LIMITED, "polling too fast, back off")

        ttl_ms = None
        if request.ttl_seconds is not None:
            ttl_ms = _duration_ms(request.ttl_seconds, MS_IN_SECOND, "ttl_seconds")
        result = gate.try_acquire(request.subject, request.requester, ttl_ms=ttl_ms, context=request.context)
        if result.code == ALREADY_HELD:
            raise busy_error(
                BUSY_E_ALREADY_HELD,
                "subject is engaged by another requester",
                subject=result.subject,
                holder=result.holder,
                expires_at=ms_to_iso(result.expires_at_ms),
                context=result.context,
            )
        return result.as_dict()

    @app.post("/v1/engage/heartbeat")
    def engage_heartbeat(request: HeartbeatRequest):
        extend_ms = _duration_ms(request.extend_seconds, MS_IN_SECOND, "extend_seconds")
        expires_at = gate.heartbeat(request.subject, request.requester, extend_ms)
        return {"subject": request.subject, "holder": request.requester, "expires_at": ms_to_iso(expires_at)}

    @app.post("/v1/engage/release")
    def engage_release(request: EngageReleaseRequest):
        result = gate.release(
            request.subject,
            request.requester,
            value=request.value,
            notes=request.notes,
            metadata=request.metadata,
            record_history=request.record_history,
        )
        return result.as_dict()

    @app.get("/v1/engage/status/{subject}")
    def engage_status(subject: str):
        return gate.lock_status(subject).as_dict(now_ms=gate.clock.now_ms())

    @app.get("/v1/engage/busy")
    def engage_busy():
        now = gate.clock.now_ms()
        return {"busy": [lock.as_dict(now_ms=now) for lock in gate.busy_list()]}

    # ---------------------------
    # History
    # ---------------------------

    @app.get("/v1/history")
    def history(
        party: Optional[str] = None,
        role: str = "both",
        subject: Optional[str] = None,
        holder: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        records = gate.history(party, role, subject=subject, holder=holder, limit=limit)
        return {"history": [r.as_dict() for r in records]}

    # ---------------------------
    # Operational stats (/v1/stats)
    # ---------------------------
    stats_token = (os.getenv("BUSY_STATS_TOKEN", "") or "").strip()

    @app.get("/v1/stats")
    def stats(http_request: Request):
        if stats_token and not _token_ok(http_request, stats_token, "X-Stats-Token"):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        extra = gate.stats_extra()
        metrics.set_lockdown_active(bool(extra.get("lockdown_active")))
        return OPS_STATS.snapshot(extra=extra)

    @app.get("/v1/health")
    def health_check():
        """Health check endpoint."""
        lockdown = gate.circuit.is_lockdown_active()
        return {
            "status": "degraded" if lockdown else "healthy",
            "version": busy_version,
            "lockdown_active": lockdown,
        }

    return app


def main(argv=None):
    """
    Main entry point for the busy-gate server.

    Usage:
        busy-gate-server                    # Start on default port 8000
        busy-gate-server --port 9000        # Start on custom port
        busy-gate-server --db ./state.db    # Use a specific SQLite file
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="busy-gate HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    BUSY_DB_PATH                 Path to SQLite database (default: busy_gate.db)
    BUSY_PROPAGATION_MODE        async|inline|off
    BUSY_LISTING_SINK            null|sqlite|http
    BUSY_RATE_LIMIT_ENGAGE_TRY   e.g. 120/m, or off
""",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--db", default=None, help="SQLite database path (overrides BUSY_DB_PATH)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level")
    args = parser.parse_args(argv)

    if args.db:
        os.environ["BUSY_DB_PATH"] = args.db

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)

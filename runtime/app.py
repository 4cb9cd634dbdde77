"""Bastion FastAPI server.

Built by ``create_app``; uvicorn runs it in factory mode
(``runtime.app:create_app``) so each process owns exactly one set of
components.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from contracts.api import Capabilities, FileContent, SessionInitRequest
from contracts.audit import AuditEntry, AuditEvent
from contracts.errors import BastionError, NotFoundError
from contracts.execution import CommandRequest
from contracts.policy import ActionType, Caller, Policy

from runtime.audit.query import query_filtered, stream_tail
from runtime.components import BastionComponents, init_bastion
from runtime.logging_utils import configure_logging
from runtime.metrics import compute_metrics
from runtime.policy import require_allowed
from runtime.rate_limiter import RateLimiter
from runtime.security import detect_alerts

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Liveness endpoints stay reachable even when the gate would deny.
UNGATED_PATHS = frozenset({"/health", "/version"})


# ── Dependencies ─────────────────────────────────────────────────────


def get_components(request: Request) -> BastionComponents:
    return request.app.state.components


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_caller(request: Request) -> Caller:
    """Identity for policy checks: X-Session-Id header plus client IP."""
    return Caller(
        session_id=request.headers.get("x-session-id", "unknown"),
        ip_address=_client_ip(request),
        request_id=getattr(request.state, "request_id", "") or str(uuid.uuid4()),
    )


def _error(exc: BastionError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


# ── Routes ───────────────────────────────────────────────────────────

router = APIRouter()


@router.post("/session/init")
def init_session(
    body: SessionInitRequest,
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    return c.sessions.create(body.tools).to_wire()


@router.get("/session/capabilities")
def session_capabilities() -> dict[str, Any]:
    return Capabilities().to_wire()


@router.get("/session/{session_id}")
def get_session(
    session_id: str,
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    session = c.sessions.get(session_id)
    if session is None:
        raise NotFoundError("Session not found")
    return session.to_wire()


# list routes must precede the catch-all file path
@router.get("/files/list")
def list_root(
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return c.workspace.list_files("", caller).to_wire()


@router.get("/files/list/{dir_path:path}")
def list_directory(
    dir_path: str,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return c.workspace.list_files(dir_path, caller).to_wire()


@router.get("/files/{file_path:path}")
def read_file(
    file_path: str,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return c.workspace.read_file(file_path, caller).to_wire()


@router.post("/files")
def write_file(
    body: FileContent,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return c.workspace.write_file(body.path, body.content, caller).to_wire()


@router.post("/execute")
async def run_command(
    body: CommandRequest,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    record = await c.sandbox.run_command(
        body,
        session_id=caller.session_id,
        ip_address=caller.ip_address,
        request_id=caller.request_id,
    )
    return record.to_wire()


@router.get("/execute/{execution_id}")
def get_execution(
    execution_id: str,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    _authorize_execution(c, caller, execution_id)
    record = c.sandbox.get_execution(execution_id)
    if record is None:
        raise NotFoundError("Execution not found")
    return record.to_wire()


@router.delete("/execute/{execution_id}")
def cancel_execution(
    execution_id: str,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    _authorize_execution(c, caller, execution_id)
    if not c.sandbox.cancel_execution(execution_id):
        raise NotFoundError("Execution not found")
    return {"success": True, "message": "Execution cancelled"}


def _authorize_execution(c: BastionComponents, caller: Caller, execution_id: str) -> None:
    require_allowed(
        c.policy,
        caller.context(execution_id, ActionType.COMMAND_EXECUTION),
        audit=c.audit,
        request_id=caller.request_id,
    )


@router.get("/policy")
def list_policies(c: BastionComponents = Depends(get_components)) -> dict[str, Any]:
    return {"policies": [p.to_wire() for p in c.policy.list_policies()]}


@router.get("/policy/{policy_id}")
def get_policy(policy_id: str, c: BastionComponents = Depends(get_components)) -> dict[str, Any]:
    policy = c.policy.get_policy(policy_id)
    if policy is None:
        raise NotFoundError("Policy not found")
    return policy.to_wire()


@router.post("/policy", status_code=201)
def create_policy(body: Policy, c: BastionComponents = Depends(get_components)) -> dict[str, Any]:
    c.policy.add_policy(body)
    return body.to_wire()


@router.put("/policy/{policy_id}")
def replace_policy(
    policy_id: str,
    body: Policy,
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    existing = c.policy.get_policy(policy_id)
    if existing is None:
        raise NotFoundError("Policy not found")
    updated = body.model_copy(update={
        "id": policy_id,
        "created_at": existing.created_at,
        "updated_at": datetime.now(timezone.utc),
    })
    c.policy.add_policy(updated)
    return updated.to_wire()


@router.delete("/policy/{policy_id}")
def delete_policy(policy_id: str, c: BastionComponents = Depends(get_components)) -> dict[str, Any]:
    if not c.policy.remove_policy(policy_id):
        raise NotFoundError("Policy not found")
    return {"success": True, "message": "Policy deleted successfully"}


@router.get("/tools")
def list_tools(
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return {"tools": [t.to_wire() for t in c.tools.list_tools(caller)]}


@router.get("/tools/{name}")
def describe_tool(
    name: str,
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    return c.tools.describe(name, caller).to_wire()


@router.post("/tools/{name}/execute")
async def execute_tool(
    name: str,
    args: dict[str, Any],
    c: BastionComponents = Depends(get_components),
    caller: Caller = Depends(get_caller),
) -> dict[str, Any]:
    output = await c.tools.execute(name, args, caller)
    return output.model_dump(mode="json")


@router.get("/audit/logs")
def audit_logs(
    event: AuditEvent | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    request_id: str | None = Query(None),
    session_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    """Filtered, paginated audit log query."""
    entries, total = query_filtered(
        c.audit.path,
        event=event,
        since=since,
        until=until,
        request_id=request_id,
        session_id=session_id,
        limit=limit,
        offset=offset,
    )
    return {"entries": [e.model_dump(mode="json") for e in entries], "total": total}


@router.get("/audit/stream")
async def audit_stream(c: BastionComponents = Depends(get_components)) -> StreamingResponse:
    """SSE endpoint for real-time log tailing."""

    async def event_generator():
        async for entry in stream_tail(c.audit.path):
            yield f"data: {entry.model_dump_json()}\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/audit/{request_id}")
def audit_query(request_id: str, c: BastionComponents = Depends(get_components)) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in c.audit.query_by_request(request_id)]


@router.get("/metrics")
def metrics(
    since: datetime | None = Query(None),
    window: int = Query(60, ge=1, le=3600, description="Bucket window in seconds"),
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    return compute_metrics(c.audit.path, since=since, window_seconds=window)


@router.get("/security/alerts")
def security_alerts(
    since: datetime | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    c: BastionComponents = Depends(get_components),
) -> dict[str, Any]:
    alerts = detect_alerts(c.audit.path, since=since, limit=limit)
    return {"alerts": alerts, "total": len(alerts)}


# ── Background work ──────────────────────────────────────────────────


async def sweep_rate_limits(limiter: RateLimiter, interval: float) -> None:
    """Drop expired rate-limit windows every *interval* seconds."""
    while True:
        await asyncio.sleep(interval)
        limiter.cleanup()


# ── App factory ──────────────────────────────────────────────────────


def create_app(components: BastionComponents | None = None) -> FastAPI:
    """Build the app around *components*, or load them from ``BASTION_MANIFEST``."""
    if components is None:
        components = init_bastion()
    manifest = components.manifest
    configure_logging(manifest.logging.level, manifest.logging.path)
    api_version = manifest.runtime.api_version

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.start_time = time.time()
        interval = manifest.rate_limit.cleanup_interval_seconds
        sweeper = None
        if interval > 0:
            sweeper = asyncio.create_task(sweep_rate_limits(components.rate_limiter, interval))
        logger.info(
            "Bastion '%s' ready (policy_mode=%s, backend=%s, policies=%d)",
            manifest.app.name,
            manifest.runtime.policy_mode.value,
            components.sandbox.backend.kind.value,
            len(components.policy),
        )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await components.sandbox.shutdown()

    app = FastAPI(title="Bastion", version=VERSION, lifespan=lifespan)
    app.state.components = components
    app.state.start_time = time.time()

    @app.exception_handler(BastionError)
    async def bastion_error(request: Request, exc: BastionError) -> JSONResponse:
        return _error(exc)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # Starlette runs the last-registered middleware first: audit, then gate.
    @app.middleware("http")
    async def rate_limit_gate(request: Request, call_next):
        if request.url.path not in UNGATED_PATHS:
            caller = Caller(
                session_id=request.headers.get("x-session-id", "unknown"),
                ip_address=_client_ip(request),
            )
            try:
                require_allowed(
                    components.policy,
                    caller.context(request.url.path, ActionType.RATE_LIMIT),
                    audit=components.audit,
                    request_id=request.state.request_id,
                )
            except BastionError:
                response = JSONResponse(
                    {
                        "error": "Rate limit exceeded",
                        "message": "Too many requests, please try again later",
                    },
                    status_code=429,
                )
                response.headers["X-API-Version"] = api_version
                return response

        response = await call_next(request)
        response.headers["X-API-Version"] = api_version
        return response

    @app.middleware("http")
    async def audit_requests(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        session_id = request.headers.get("x-session-id", "unknown")
        ip_address = _client_ip(request)
        started = time.monotonic()

        components.audit.log(AuditEntry(
            request_id=request_id,
            event=AuditEvent.REQUEST_START,
            session_id=session_id,
            ip_address=ip_address,
            detail={"method": request.method, "path": request.url.path},
        ))
        response = await call_next(request)
        components.audit.log(AuditEntry(
            request_id=request_id,
            event=AuditEvent.REQUEST_END,
            session_id=session_id,
            ip_address=ip_address,
            detail={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        ))
        response.headers["X-Request-Id"] = request_id
        return response

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "version": manifest.app.version,
            "apiVersion": api_version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptimeSeconds": round(time.time() - app.state.start_time, 1),
            "policyMode": manifest.runtime.policy_mode.value,
            "backend": components.sandbox.backend.kind.value,
            "policies": len(components.policy),
            "activeExecutions": components.sandbox.active_count,
        }

    @app.get("/version")
    def version() -> dict[str, Any]:
        return {"version": api_version, "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(router, prefix=f"/api/{api_version}")
    # legacy, unversioned
    app.include_router(router)

    return app

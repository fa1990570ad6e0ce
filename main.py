"""runmeter: pay-per-call execution of tenant code with usage metering and billing."""
import os
import uuid
import time
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Depends, Body, BackgroundTasks, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, get_environment_info
from auth import get_caller
from db import LOOKBACK_PERIODS
from middleware import RequestContextMiddleware
from models import (
    CallContext, CallerIdentity, ExecutionRequest, InvocationPayload, PERIODS,
    RequestSnapshot, ResponseSnapshot, utcnow
)
from services import Services, build_services

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("runmeter")

app = FastAPI(
    title="runmeter",
    description="Sandboxed pay-per-call API execution with usage metering and billing",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_services(request: Request) -> Services:
    return request.app.state.services


# Exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for better error reporting."""
    request_id = getattr(request.state, 'request_id', str(uuid.uuid4()))
    error_msg = f"Unhandled exception in {request.url.path}: {str(exc)}"

    logger.error(error_msg, exc_info=True)

    services = getattr(request.app.state, "services", None)
    if services is not None:
        try:
            await services.store.log_connection_event(
                "unhandled_exception",
                "error",
                error_msg,
                {
                    "path": str(request.url.path),
                    "method": request.method,
                    "request_id": request_id,
                    "error_type": type(exc).__name__
                }
            )
        except Exception as log_error:
            logger.error(f"Failed to log exception: {log_error}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
            "timestamp": _now_iso()
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    request_id = getattr(request.state, 'request_id', str(uuid.uuid4()))

    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "message": "Invalid request data",
            "details": jsonable_errors(exc),
            "request_id": request_id,
            "timestamp": _now_iso()
        }
    )


def jsonable_errors(exc: RequestValidationError):
    # pydantic puts the raw exception object in ctx for value errors
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent format."""
    request_id = getattr(request.state, 'request_id', str(uuid.uuid4()))

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP error",
            "message": exc.detail,
            "status_code": exc.status_code,
            "request_id": request_id,
            "timestamp": _now_iso()
        }
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


@app.on_event("startup")
async def startup_event():
    """Build (unless injected) and start every service."""
    startup_start_time = time.time()
    logger.info("Starting runmeter service initialization...")

    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services

    await services.startup()

    env = "kubernetes" if os.environ.get("KUBERNETES_SERVICE_HOST") else "standalone"
    startup_time = time.time() - startup_start_time
    startup_metadata = {
        "environment": env,
        "startup_time_seconds": round(startup_time, 2),
        "host": services.settings.HOST,
        "port": services.settings.PORT,
        "billing_worker": services.worker.is_running,
        **get_environment_info(services.settings)
    }

    try:
        await services.store.log_connection_event(
            "application_startup", "success", f"runmeter started in {env} environment", startup_metadata
        )
    except Exception as e:
        logger.error(f"Failed to log startup event: {e}")

    logger.info(f"runmeter started in {env} environment (startup time: {startup_time:.2f}s)")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the worker, flush metering and close connections."""
    logger.info("Shutting down runmeter service...")
    services = getattr(app.state, "services", None)
    if services is None:
        return
    try:
        await services.store.log_connection_event(
            "application_shutdown", "success", "runmeter service shutdown", {"shutdown_time": _now_iso()}
        )
    except Exception as e:
        logger.error(f"Failed to log shutdown event: {e}")
    await services.shutdown()
    logger.info("runmeter service shutdown completed")


# System endpoints
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service information."""
    return {
        "service": "runmeter",
        "version": "1.0.0",
        "status": "operational",
        "timestamp": _now_iso(),
        "endpoints": {
            "health": "/health",
            "execute": "/api/executor/{apiId}",
            "executor_health": "/api/executor/health",
            "usage": "/api/usage/user",
            "worker": "/api/usage/worker/status"
        }
    }


@app.get("/health", tags=["System"])
async def health_check(services: Services = Depends(get_services)):
    """Overall health: database, event log, sandbox engine and worker."""
    db_health = await services.store.health_check()
    events_health = await services.event_log.health_check()
    sandbox_health = await services.sandbox.health_check()

    overall_status = "healthy"
    if not db_health.get("database_connected", False):
        overall_status = "degraded" if db_health.get("csv_fallback_active", False) else "unhealthy"
    if events_health.get("status") != "healthy" or sandbox_health.get("status") != "healthy":
        overall_status = "degraded" if overall_status == "healthy" else overall_status

    return {
        "status": overall_status,
        "timestamp": _now_iso(),
        "version": "1.0.0",
        "database": db_health,
        "eventLog": events_health,
        "sandbox": sandbox_health,
        "worker": services.worker.get_status(),
        "environment": get_environment_info(services.settings)
    }


@app.post("/generate-token", tags=["Authentication"])
async def generate_token_endpoint(
    payload: Dict[str, Any] = Body(...),
    x_token_secret: str = Header(..., alias="X-Token-Secret"),
    services: Services = Depends(get_services)
):
    """Issue an API token for a user. Requires the shared token secret."""
    if x_token_secret != services.settings.TOKEN_SECRET:
        raise HTTPException(status_code=403, detail="Invalid token secret")

    user_id = payload.get("user_id")
    project_id = payload.get("project_id")
    token = services.auth.generate_token(user_id=user_id, project_id=project_id)

    await services.store.log_connection_event(
        "token_generated", "success", f"Token generated for user {user_id}", {"user_id": user_id}
    )
    return {
        "token": token,
        "user_id": str(user_id).strip(),
        "project_id": str(project_id).strip() if project_id else str(user_id).strip(),
        "type": "JWT",
        "algorithm": services.settings.JWT_ALGORITHM,
        "timestamp": _now_iso()
    }


# Executor endpoints
def _original_url(request: Request) -> str:
    if request.url.query:
        return f"{request.url.path}?{request.url.query}"
    return request.url.path


def _execution_request(payload: InvocationPayload, request: Request) -> ExecutionRequest:
    return ExecutionRequest(
        method=payload.method,
        headers={"Content-Type": "application/json", **payload.headers},
        body=payload.body,
        query=payload.query,
        url=_original_url(request),
        timestamp=utcnow()
    )


@app.get("/api/executor/health", tags=["Executor"])
async def executor_health(services: Services = Depends(get_services)):
    return {"success": True, "health": await services.sandbox.health_check()}


@app.get("/api/executor/stats", tags=["Executor"])
async def executor_stats(services: Services = Depends(get_services)):
    try:
        stats = await services.sandbox.get_stats()
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=f"Failed to get runtime stats: {str(e)}")
    return {"success": True, "stats": stats}


@app.post("/api/executor/hash/{code_ref}", tags=["Executor"])
async def execute_by_reference(
    code_ref: str,
    request: Request,
    payload: Optional[InvocationPayload] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    """Run code straight from the artifact store. Not metered."""
    payload = payload or InvocationPayload()
    result = await services.sandbox.execute(code_ref, _execution_request(payload, request))
    return {"codeRef": code_ref, **result.to_response()}


@app.post("/api/executor/{api_id}", tags=["Executor"])
async def execute_api(
    api_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Optional[InvocationPayload] = None,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    """Execute the current version of an API and meter the call."""
    start_time = getattr(request.state, "start_time", time.time())
    payload = payload or InvocationPayload()

    api = await services.store.get_api(api_id)
    if api is None:
        raise HTTPException(status_code=404, detail="API not found")
    if not api.code_ref:
        raise HTTPException(status_code=400, detail="No valid version found for this API")

    result = await services.sandbox.execute(api.code_ref, _execution_request(payload, request))
    content = {
        **result.to_response(),
        "apiId": api_id,
        "apiName": api.name,
        "version": api.current_version
    }

    # Failed executions are billed as server errors
    status_code = 200 if result.success else 500
    ctx = CallContext(
        api_id=api_id,
        user_id=caller.user_id,
        endpoint=request.url.path,
        method=request.method,
        duration_ms=int((time.time() - start_time) * 1000),
        status_code=status_code,
        request=RequestSnapshot(
            url=_original_url(request),
            method=request.method,
            headers=dict(request.headers),
            body=payload.model_dump(by_alias=True),
            query=dict(request.query_params)
        ),
        response=ResponseSnapshot(headers={"content-type": "application/json"}, body=content),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        api_key_ref=caller.api_key_ref,
        execution_id=result.execution_id
    )
    # Metered after the response has been sent
    background_tasks.add_task(services.metering.submit, ctx)

    return content


# Usage endpoints
def _check_lookback(period: str) -> str:
    return period if period in LOOKBACK_PERIODS else "24h"


@app.get("/api/usage/user", tags=["Usage"])
async def user_usage(
    period: str = "24h",
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    period = _check_lookback(period)
    usage = await services.store.user_usage(caller.user_id, period)
    return {"success": True, "userId": caller.user_id, "period": period,
            "usage": [u.model_dump(by_alias=True) for u in usage]}


@app.get("/api/usage/api/{api_id}", tags=["Usage"])
async def api_usage(
    api_id: str,
    period: str = "24h",
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    period = _check_lookback(period)
    usage = await services.store.api_usage(api_id, period)
    return {"success": True, "apiId": api_id, "period": period,
            "usage": [u.model_dump(by_alias=True) for u in usage]}


@app.get("/api/usage/metrics", tags=["Usage"])
async def realtime_metrics(
    user_id: Optional[str] = Query(None, alias="userId"),
    api_id: Optional[str] = Query(None, alias="apiId"),
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    """Live counters for one (user, api) pair."""
    if not user_id or not api_id:
        raise HTTPException(status_code=400, detail="userId and apiId are required")
    counter = await services.realtime.get(user_id, api_id)
    return {"success": True, "userId": user_id, "apiId": api_id,
            "metrics": counter.model_dump(by_alias=True)}


@app.get("/api/usage/snapshots", tags=["Usage"])
async def usage_snapshots(
    period: Optional[str] = None,
    user_id: Optional[str] = Query(None, alias="userId"),
    api_id: Optional[str] = Query(None, alias="apiId"),
    limit: int = 100,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    if period is not None and period not in PERIODS:
        raise HTTPException(status_code=400, detail=f"period must be one of {', '.join(PERIODS)}")
    limit = max(1, min(limit, 1000))
    snapshots = await services.store.get_snapshots(period=period, user_id=user_id, api_id=api_id, limit=limit)
    return {"success": True, "count": len(snapshots),
            "snapshots": [s.model_dump(by_alias=True, mode="json") for s in snapshots]}


@app.get("/api/usage/worker/status", tags=["Billing"])
async def worker_status(services: Services = Depends(get_services)):
    worker = services.worker
    return {
        "success": True,
        "status": worker.get_status(),
        "stats": worker.get_stats(),
        "backlog": {
            "streamLength": await services.event_log.length(),
            "pending": await services.event_log.pending_count(worker.group_name)
        },
        "eventLog": await services.event_log.health_check()
    }


@app.post("/api/usage/worker/start", tags=["Billing"])
async def worker_start(
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    if services.worker.is_running:
        return {"success": True, "message": "Billing worker is already running",
                "status": services.worker.get_status()}
    await services.worker.start()
    return {"success": True, "message": "Billing worker started", "status": services.worker.get_status()}


@app.post("/api/usage/worker/stop", tags=["Billing"])
async def worker_stop(
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services)
):
    services.worker.stop()
    return {"success": True, "message": "Billing worker stopped", "status": services.worker.get_status()}


@app.get("/api/usage/health", tags=["Usage"])
async def usage_health(services: Services = Depends(get_services)):
    return {"success": True, "health": await services.health(), "timestamp": _now_iso()}


# Application entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level="debug" if settings.DEBUG else "info"
    )

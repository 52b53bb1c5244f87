import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from attendance_core.db import SessionLocal, engine, schema_state
from attendance_core.errors import (
    FORBIDDEN,
    INTERNAL_ERROR,
    NOT_FOUND,
    UNAUTHORIZED,
    VALIDATION_ERROR,
    ApiError,
    error_response,
)
from attendance_core.logging_utils import request_id_var, setup_json_logging
from attendance_core.routers import attendance
from attendance_core.security import SERVICE_EVENTS, SERVICE_PERMISSIONS, SERVICE_SETTINGS
from attendance_core.services.auto_absence import run_auto_absence_if_due
from attendance_core.services.permissions import CapabilityService, role_capability_lookup
from attendance_core.services.registry import EventBus, ServiceRegistry
from attendance_core.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from attendance_core.services.settings_cache import SettingsCache, session_settings_loader
from attendance_core.settings import get_settings

setup_json_logging()
logger = logging.getLogger("attendance_core.request")
worker_logger = logging.getLogger("attendance_core.auto_absence_worker")
settings = get_settings()


def build_registry() -> ServiceRegistry:
    registry = ServiceRegistry()
    registry.register(
        SERVICE_PERMISSIONS,
        CapabilityService(role_capability_lookup(), allow_degraded=settings.rbac_optional),
    )
    registry.register(
        SERVICE_SETTINGS,
        SettingsCache(
            session_settings_loader(SessionLocal),
            ttl_seconds=settings.settings_cache_ttl_seconds,
        ),
    )
    registry.register(SERVICE_EVENTS, EventBus(max_workers=settings.event_dispatch_workers))
    return registry


app = FastAPI(title=settings.app_name, version="0.1.0")


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    token = request_id_var.set(request_id)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "event_id": getattr(request.state, "event_id", None),
            },
        )
        request_id_var.reset(token)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: UNAUTHORIZED,
        403: FORBIDDEN,
        404: NOT_FOUND,
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code=VALIDATION_ERROR,
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code=INTERNAL_ERROR,
        message="Unexpected server error.",
    )


app.include_router(attendance.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _auto_absence_worker_loop(stop_event: asyncio.Event, registry: ServiceRegistry) -> None:
    interval_seconds = max(15, int(settings.auto_absence_poll_seconds))
    settings_cache: SettingsCache = registry.require(SERVICE_SETTINGS)
    events: EventBus = registry.require(SERVICE_EVENTS)
    while not stop_event.is_set():
        try:
            results = await asyncio.to_thread(
                run_auto_absence_if_due,
                SessionLocal,
                settings_provider=settings_cache.get,
                now=datetime.now(timezone.utc),
                events=events,
            )
        except Exception:
            worker_logger.exception("auto_absence_tick_failed")
        else:
            if results:
                worker_logger.info(
                    "auto_absence_tick",
                    extra={
                        "runs": len(results),
                        "created": sum(int(item["total"]) for item in results),
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    schema_state.mark(ready=result.ok, issues=result.issues)
    if result.ok:
        worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_services() -> None:
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry()
    registry: ServiceRegistry = app.state.registry
    logger.info("services_registered", extra={"capabilities": registry.capabilities()})

    if not settings.auto_absence_worker_enabled:
        return
    if getattr(app.state, "auto_absence_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.auto_absence_stop_event = stop_event
    app.state.auto_absence_task = asyncio.create_task(_auto_absence_worker_loop(stop_event, registry))
    worker_logger.info(
        "auto_absence_worker_started",
        extra={"interval_seconds": max(15, int(settings.auto_absence_poll_seconds))},
    )


@app.on_event("shutdown")
async def stop_services() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "auto_absence_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "auto_absence_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.auto_absence_stop_event = None
    app.state.auto_absence_task = None

    registry: ServiceRegistry | None = getattr(app.state, "registry", None)
    if registry is not None:
        events: EventBus | None = registry.lookup(SERVICE_EVENTS)
        if events is not None:
            events.close()


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    registry: ServiceRegistry | None = getattr(app.state, "registry", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "services": registry.capabilities() if registry is not None else [],
    }

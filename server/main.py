from fastapi import FastAPI, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from datetime import datetime, timezone
import re
import time
import uuid

from models import Device, get_db, init_db
from schemas import (
    DeviceCreateRequest, DeviceUpdateRequest, CommandCreateRequest, CommandResultRequest,
    ControlRequest, BulkControlRequest, KioskRequest, EmergencyRequest,
    EnrollRequest, DeviceStatusPayload, ChatMessageRequest
)
from auth import verify_device_token, verify_admin_key_header
from config import config
from errors import MDMError, NotFoundError
from observability import structured_logger, metrics, request_id_var
from storage import (
    DatabaseStorage, get_storage, serialize_chat_message, serialize_command, serialize_device, serialize_log
)
import commands
import heartbeat

app = FastAPI(title="FortressMDM API")

# Numeric path segments are collapsed so metrics stay low-cardinality
_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Middleware to generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000

    route = _ID_SEGMENT.sub("/{id}", request.url.path)
    if route.startswith("/api/devices/by-imei/"):
        route = "/api/devices/by-imei/{imei}"
    elif route.startswith("/api/chat/"):
        route = "/api/chat/{user_id}"

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })

    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id

    return response


@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Catches anything the exception handlers did not and answers with a
    generic 500 instead of leaking internals to the client.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MDMError)
async def mdm_error_handler(request: Request, exc: MDMError):
    structured_logger.log_event(
        exc.event,
        level="ERROR" if exc.status_code >= 500 else "WARN",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Malformed bodies and path parameters are client errors and answer 400.
    """
    errors = jsonable_encoder(exc.errors())
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=errors
    )

    return JSONResponse(
        status_code=400,
        content={"detail": errors}
    )


backend_start_time = datetime.now(timezone.utc)


@app.on_event("startup")
async def startup_event():
    config.print_config_summary()
    is_valid, errors, warnings = config.validate()
    for warning in warnings:
        structured_logger.log_event("startup.config_warning", level="WARN", warning=warning)
    if not is_valid:
        for error in errors:
            structured_logger.log_event("startup.config_error", level="ERROR", error=error)
        raise RuntimeError("Configuration validation failed: " + "; ".join(errors))

    init_db()
    structured_logger.log_event("startup.complete", database=config.get_database_url().split("://")[0])


# --- Ops ---

@app.get("/healthz")
async def health_check():
    """
    Liveness check - returns 200 if process is alive.
    Does not check dependencies (use /readyz for that).
    """
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "uptime_formatted": f"{int(uptime_seconds // 3600)}h {int((uptime_seconds % 3600) // 60)}m",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/readyz")
async def readiness_check(db: Session = Depends(get_db)):
    """Readiness check - 200 when the database answers, 503 otherwise."""
    try:
        ready = db.execute(text("SELECT 1")).scalar() == 1
        error = None
    except Exception as e:
        ready = False
        error = f"database: {str(e)[:100]}"

    return JSONResponse(
        status_code=200 if ready else 503,
        content={"ready": ready, "checks": {"database": ready}, "error": error}
    )


@app.get("/metrics")
async def prometheus_metrics(admin=Depends(verify_admin_key_header)):
    """Prometheus-compatible metrics endpoint (requires admin authentication)"""
    structured_logger.log_event("metrics.scrape")

    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


# --- Console: devices ---

@app.get("/api/devices")
async def list_devices(store: DatabaseStorage = Depends(get_storage)):
    now = datetime.now(timezone.utc)
    return [
        serialize_device(device, heartbeat.device_status(device, now))
        for device in store.get_devices()
    ]


@app.post("/api/devices", status_code=201)
async def create_device(payload: DeviceCreateRequest, store: DatabaseStorage = Depends(get_storage)):
    device = store.create_device(
        name=payload.name,
        imei=payload.imei,
        serial_number=payload.serial_number,
        device_type=payload.device_type,
        fcm_token=payload.fcm_token,
        is_kiosk_mode=payload.is_kiosk_mode,
        kiosk_app_package=payload.kiosk_app_package,
        kiosk_config=payload.kiosk_config.model_dump(by_alias=True) if payload.kiosk_config else None,
    )
    structured_logger.log_event("device.created", device_id=device.id, device_type=device.device_type)
    return serialize_device(device, heartbeat.device_status(device))


# Declared before /api/devices/{device_id} routes so "bulk" is never read as an id
@app.post("/api/devices/bulk/controls")
async def bulk_controls(payload: BulkControlRequest, store: DatabaseStorage = Depends(get_storage)):
    results = commands.apply_bulk_controls(store, payload.device_ids, payload.controls)
    failed = sum(1 for result in results if result["status"] == "failed")

    structured_logger.log_event(
        "bulk_controls.applied",
        devices=len(payload.device_ids),
        controls=list(payload.controls),
        failed=failed
    )
    return {
        "message": f"Bulk controls applied to {len(payload.device_ids)} devices",
        "results": results
    }


@app.get("/api/devices/by-imei/{imei}")
async def get_device_by_imei(imei: str, store: DatabaseStorage = Depends(get_storage)):
    device = store.get_device_by_imei(imei)
    if device is None:
        raise NotFoundError("Device not found")
    return serialize_device(device, heartbeat.device_status(device))


@app.get("/api/devices/{device_id}")
async def get_device(device_id: int, store: DatabaseStorage = Depends(get_storage)):
    device = store.require_device(device_id)
    return serialize_device(device, heartbeat.device_status(device))


@app.put("/api/devices/{device_id}")
async def update_device(
    device_id: int,
    payload: DeviceUpdateRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    updates = payload.model_dump(exclude_none=True)
    device = store.update_device(device_id, **updates) if updates else store.require_device(device_id)
    structured_logger.log_event("device.updated", device_id=device_id, fields=sorted(updates))
    return serialize_device(device, heartbeat.device_status(device))


@app.delete("/api/devices/{device_id}")
async def delete_device(device_id: int, store: DatabaseStorage = Depends(get_storage)):
    store.delete_device(device_id)
    structured_logger.log_event("device.deleted", device_id=device_id)
    return {"message": "Device deleted successfully"}


@app.post("/api/devices/{device_id}/token")
async def issue_device_token(device_id: int, store: DatabaseStorage = Depends(get_storage)):
    """
    Provision a bearer token for a console-created device (or rotate one).
    The raw token is only ever returned here.
    """
    device, device_token = heartbeat.issue_device_token(store, device_id)
    return {"deviceId": device.id, "token": device_token}


# --- Console: commands and audit ---

@app.post("/api/devices/{device_id}/commands", status_code=201)
async def create_device_command(
    device_id: int,
    payload: CommandCreateRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    command = commands.issue_command(store, device_id, payload.command, payload.issued_by)
    return serialize_command(command)


@app.get("/api/devices/{device_id}/commands")
async def get_device_commands(device_id: int, store: DatabaseStorage = Depends(get_storage)):
    return [serialize_command(command) for command in commands.list_commands(store, device_id)]


@app.post("/api/devices/{device_id}/commands/{command_id}/result")
async def record_command_result(
    device_id: int,
    command_id: int,
    payload: CommandResultRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    """Issuer-side outcome report, for commands executed out of band."""
    store.require_device(device_id)
    command, applied = commands.report_result(
        store,
        command_id,
        payload.success,
        error=payload.error,
        response=payload.response,
        device_id=device_id,
        reported_by="console"
    )
    return serialize_command(command) | {"applied": applied}


@app.get("/api/devices/{device_id}/logs")
async def get_device_logs(device_id: int, store: DatabaseStorage = Depends(get_storage)):
    return [serialize_log(entry) for entry in commands.list_logs(store, device_id)]


# --- Console: control actions ---

@app.post("/api/devices/{device_id}/controls")
async def device_control(
    device_id: int,
    payload: ControlRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    command = commands.apply_control(store, device_id, payload.action, payload.enabled)
    return {
        "message": f"{payload.action} {'enabled' if payload.enabled else 'disabled'} successfully",
        "command": command.command,
        "commandId": command.id
    }


@app.post("/api/devices/{device_id}/kiosk")
async def device_kiosk(
    device_id: int,
    payload: KioskRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    kiosk_config = payload.config.model_dump(by_alias=True) if payload.config else None
    device, command = commands.set_kiosk_mode(store, device_id, payload.enabled, kiosk_config)
    return serialize_device(device, heartbeat.device_status(device)) | {"commandId": command.id}


@app.post("/api/devices/{device_id}/emergency")
async def device_emergency(
    device_id: int,
    payload: EmergencyRequest,
    store: DatabaseStorage = Depends(get_storage)
):
    command = commands.emergency_action(
        store,
        device_id,
        payload.action,
        payload.admin_password,
        payload.reason,
        config.get_emergency_password()
    )
    return {
        "message": f"Emergency {payload.action} command sent successfully",
        "commandId": command.id
    }


@app.get("/api/stats")
async def fleet_stats(store: DatabaseStorage = Depends(get_storage)):
    return heartbeat.fleet_stats(store.get_devices())


# --- Console: chat history ---
# Messages are stored as sent; no assistant reply is generated

@app.post("/api/chat", status_code=201)
async def create_chat_message(payload: ChatMessageRequest, store: DatabaseStorage = Depends(get_storage)):
    record = store.create_chat_message(payload.user_id, payload.message)
    metrics.inc_counter("chat_messages_total")
    structured_logger.log_event("chat.message_stored", chat_message_id=record.id, user_id=payload.user_id)
    return serialize_chat_message(record)


@app.get("/api/chat/{user_id}")
async def list_chat_messages(user_id: str, store: DatabaseStorage = Depends(get_storage)):
    return [serialize_chat_message(record) for record in store.get_chat_messages(user_id)]


# --- Device protocol ---

@app.post("/api/enroll")
async def enroll(payload: EnrollRequest, store: DatabaseStorage = Depends(get_storage)):
    device, device_token = heartbeat.enroll_device(
        store,
        payload.enrollment_code,
        payload.device_info,
        config.get_enrollment_code()
    )
    return {
        "success": True,
        "token": device_token,
        "deviceId": device.id,
        "serverVersion": heartbeat.SERVER_VERSION
    }


@app.post("/api/device/status")
async def device_status(
    payload: DeviceStatusPayload,
    device: Device = Depends(verify_device_token),
    store: DatabaseStorage = Depends(get_storage)
):
    heartbeat.record_status(store, device, payload)
    return {"success": True}


@app.get("/api/device/commands")
async def device_pending_commands(
    device: Device = Depends(verify_device_token),
    store: DatabaseStorage = Depends(get_storage)
):
    return [serialize_command(command) for command in commands.poll_commands(store, device)]


@app.post("/api/device/command/{command_id}/result")
async def device_command_result(
    command_id: int,
    payload: CommandResultRequest,
    device: Device = Depends(verify_device_token),
    store: DatabaseStorage = Depends(get_storage)
):
    """
    Receive a command outcome from the device that executed it.
    Uses the authenticated device as the owner check; repeats are no-ops.
    """
    command, applied = commands.report_result(
        store,
        command_id,
        payload.success,
        error=payload.error,
        response=payload.response,
        device_id=device.id
    )
    return {
        "success": True,
        "applied": applied,
        "status": command.status,
        "message": "Result recorded" if applied else "Already processed (idempotent)"
    }

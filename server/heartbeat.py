"""
Device side of the protocol: enrollment, status pushes and status derivation.

Status is derived in one place. A heartbeat stores the device's explicit
online report and advances last_seen; every reader recomputes status from
those two values and the configured staleness thresholds, so the heartbeat
path and the reporting paths cannot disagree.
"""
import json
from datetime import datetime, timedelta
from typing import Optional

from auth import compute_token_id, generate_device_token, hash_token, secrets_match
from config import config
from errors import ValidationError
from models import Device, ensure_utc, utcnow
from observability import structured_logger, metrics
from schemas import Coordinates, DeviceInfo, DeviceStatusPayload, Location
from storage import DatabaseStorage

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_WARNING = "warning"

SERVER_VERSION = "1.0.0"


def derive_status(last_seen: Optional[datetime], is_online: Optional[bool], now: Optional[datetime] = None) -> str:
    """
    Compute a device status from heartbeat staleness and the last online report.

    Args:
        last_seen: Time of the last accepted heartbeat (None if never seen)
        is_online: The device's last explicit online/offline report
        now: Reference time, defaults to the current UTC time

    Returns:
        "online", "warning" or "offline"
    """
    if last_seen is None:
        return STATUS_OFFLINE
    now = now or utcnow()
    age = ensure_utc(now) - ensure_utc(last_seen)

    if age > timedelta(seconds=config.get_status_offline_after_seconds()):
        return STATUS_OFFLINE
    if is_online is False:
        return STATUS_OFFLINE
    if age > timedelta(seconds=config.get_status_warning_after_seconds()):
        return STATUS_WARNING
    return STATUS_ONLINE


def device_status(device: Device, now: Optional[datetime] = None) -> str:
    return derive_status(device.last_seen, device.is_online, now)


LOW_BATTERY_THRESHOLD = 15
POLICY_STALE_AFTER = timedelta(hours=24)


def fleet_stats(devices: list[Device], now: Optional[datetime] = None) -> dict:
    """Dashboard totals by derived status."""
    now = now or utcnow()
    counts = {STATUS_ONLINE: 0, STATUS_OFFLINE: 0, STATUS_WARNING: 0}
    low_battery = 0
    kiosk = 0
    policy_violations = 0
    critical_alerts = 0

    for device in devices:
        status = device_status(device, now)
        counts[status] += 1
        battery_low = device.battery_level is not None and device.battery_level < LOW_BATTERY_THRESHOLD
        if battery_low:
            low_battery += 1
        if device.is_kiosk_mode:
            kiosk += 1
        last_seen = ensure_utc(device.last_seen)
        if status == STATUS_WARNING or last_seen is None or now - last_seen > POLICY_STALE_AFTER:
            policy_violations += 1
        if status == STATUS_OFFLINE or battery_low:
            critical_alerts += 1

    return {
        "totalDevices": len(devices),
        "onlineDevices": counts[STATUS_ONLINE],
        "offlineDevices": counts[STATUS_OFFLINE],
        "warningDevices": counts[STATUS_WARNING],
        "lowBatteryDevices": low_battery,
        "kioskDevices": kiosk,
        "policyViolations": policy_violations,
        "criticalAlerts": critical_alerts,
    }


def format_location(location: Optional[Location]) -> Optional[str]:
    if location is None:
        return None
    if isinstance(location, Coordinates):
        return json.dumps(location.model_dump())
    return location


def record_status(
    store: DatabaseStorage,
    device: Device,
    payload: DeviceStatusPayload,
    now: Optional[datetime] = None
) -> Device:
    """
    Apply one heartbeat: overwrite telemetry and advance last_seen. Status is
    not stored; readers derive it.
    """
    now = now or utcnow()
    previous_seen = ensure_utc(device.last_seen)
    # last_seen never moves backwards
    last_seen = max(previous_seen, now) if previous_seen else now

    updates = {
        "battery_level": payload.battery_level,
        "location": format_location(payload.location),
        "is_online": payload.is_online,
        "last_seen": last_seen,
    }
    if payload.is_kiosk_mode is not None:
        updates["is_kiosk_mode"] = payload.is_kiosk_mode
    if payload.wifi_enabled is not None:
        updates["wifi_enabled"] = payload.wifi_enabled
    if payload.app_version:
        updates["app_version"] = payload.app_version
    if payload.os_version:
        updates["os_version"] = payload.os_version
    if payload.fcm_token:
        updates["fcm_token"] = payload.fcm_token

    updated = store.update_device(device.id, **updates)

    metrics.inc_counter("heartbeats_ingested_total")
    structured_logger.log_event(
        "heartbeat.ingest",
        device_id=device.id,
        battery_level=payload.battery_level,
        is_online=payload.is_online,
        status=derive_status(updated.last_seen, updated.is_online, now)
    )
    return updated


def enroll_device(
    store: DatabaseStorage,
    enrollment_code: Optional[str],
    device_info: DeviceInfo,
    expected_code: Optional[str]
) -> tuple[Device, str]:
    """
    Create a device from a self-enrollment request and issue its bearer token.

    Returns:
        (device, raw_token). Only the bcrypt hash and the sha256 lookup id of
        the token are stored.
    """
    if not secrets_match(enrollment_code, expected_code):
        metrics.inc_counter("enrollments_total", {"result": "rejected"})
        structured_logger.log_event(
            "enroll.rejected",
            level="WARN",
            reason="invalid_code",
            device_name=device_info.device_name
        )
        raise ValidationError("Invalid enrollment code")

    if not device_info.imei and not device_info.serial_number:
        raise ValidationError("deviceInfo must include an IMEI or a serial number")

    device_token = generate_device_token()
    now = utcnow()
    is_online = device_info.is_online if device_info.is_online is not None else True

    device = store.create_device(
        name=device_info.device_name,
        imei=device_info.imei,
        serial_number=device_info.serial_number,
        device_type=device_info.device_type,
        os_version=device_info.os_version,
        app_version=device_info.app_version,
        battery_level=device_info.battery_level,
        location=format_location(device_info.location),
        fcm_token=device_info.fcm_token,
        is_kiosk_mode=bool(device_info.is_kiosk_mode),
        wifi_enabled=device_info.wifi_enabled,
        is_online=is_online,
        last_seen=now,
        token_hash=hash_token(device_token),
        token_id=compute_token_id(device_token),
    )

    store.create_device_log(device.id, "enrolled", {
        "appVersion": device_info.app_version,
        "osVersion": device_info.os_version,
    })

    metrics.inc_counter("enrollments_total", {"result": "success"})
    structured_logger.log_event(
        "enroll.success",
        device_id=device.id,
        device_name=device.name,
        token_id=device.token_id[-4:]
    )
    return device, device_token


def issue_device_token(store: DatabaseStorage, device_id: int) -> tuple[Device, str]:
    """
    Issue a bearer token for a console-created device, or rotate an existing
    one. The previous token stops working immediately.
    """
    device = store.require_device(device_id)
    rotated = device.token_id is not None

    device_token = generate_device_token()
    device = store.set_device_credentials(device_id, hash_token(device_token), compute_token_id(device_token))

    store.create_device_log(device_id, "token_rotated" if rotated else "token_issued", {})

    metrics.inc_counter("device_tokens_issued_total", {"rotated": str(rotated).lower()})
    structured_logger.log_event(
        "device.token_issued",
        device_id=device_id,
        rotated=rotated,
        token_id=device.token_id[-4:]
    )
    return device, device_token

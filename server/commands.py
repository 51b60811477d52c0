"""
Command lifecycle: issue, poll, report, and the control-action paths that
synthesize commands.

A command is created pending and moves once to completed or failed. Polling
never changes status, so a device that dies mid-execution gets the same
commands again on its next heartbeat (at-least-once delivery). Nothing here
retries, expires or cancels a command.

Every compound operation (command + audit entry, bulk fan-out) is a sequence
of independent store writes with no enclosing transaction; a failure part
way leaves the earlier writes in place.
"""
from datetime import datetime, timezone
from typing import Optional

from auth import secrets_match
from errors import AuthorizationError, NotFoundError, StoreError, ValidationError
from models import Device, DeviceCommand, DeviceLog
from observability import structured_logger, metrics
from storage import DatabaseStorage, COMMAND_COMPLETED

CONTROL_ACTIONS = ("wifi", "mobile_data", "gps", "bluetooth", "camera", "microphone", "usb")
EMERGENCY_ACTIONS = ("lock", "wipe")
REDACTED = "***"


def control_command_name(action: str, enabled: bool) -> str:
    return f"{action}_{'enable' if enabled else 'disable'}"


def control_log_action(action: str, enabled: bool) -> str:
    return f"{action}_{'enabled' if enabled else 'disabled'}"


def validate_control_action(action: str) -> None:
    if action not in CONTROL_ACTIONS:
        raise ValidationError(
            f"Invalid control action '{action}'. Must be one of: {', '.join(CONTROL_ACTIONS)}"
        )


def issue_command(
    store: DatabaseStorage,
    device_id: int,
    command: str,
    issued_by: Optional[str] = None
) -> DeviceCommand:
    store.require_device(device_id)

    record = store.create_device_command(device_id, command, issued_by)
    metrics.inc_counter("commands_created_total", {"source": "console"})
    structured_logger.log_event(
        "command.created",
        device_id=device_id,
        command_id=record.id,
        command=command,
        issued_by=issued_by
    )

    store.create_device_log(device_id, f"command_issued_{command}", {
        "commandId": record.id,
        "issuedBy": issued_by,
    })
    return record


def _require_history(store: DatabaseStorage, device_id: int, history: list) -> list:
    # History outlives a deleted device; an id that never had any is unknown
    if not history and store.get_device(device_id) is None:
        raise NotFoundError(f"Device {device_id} not found")
    return history


def list_commands(store: DatabaseStorage, device_id: int) -> list[DeviceCommand]:
    return _require_history(store, device_id, store.get_device_commands(device_id))


def list_logs(store: DatabaseStorage, device_id: int) -> list[DeviceLog]:
    return _require_history(store, device_id, store.get_device_logs(device_id))


def poll_commands(store: DatabaseStorage, device: Device) -> list[DeviceCommand]:
    """Pending commands for the polling device, oldest first. Pure read."""
    pending = store.get_pending_commands(device.id)
    metrics.inc_counter("command_polls_total")
    structured_logger.log_event(
        "command.poll",
        device_id=device.id,
        pending=len(pending)
    )
    return pending


def report_result(
    store: DatabaseStorage,
    command_id: int,
    success: bool,
    error: Optional[str] = None,
    response: Optional[dict] = None,
    device_id: Optional[int] = None,
    reported_by: str = "device"
) -> tuple[DeviceCommand, bool]:
    """
    Record a command outcome.

    Returns (command, applied). The first report moves the command to a
    terminal status and appends one audit entry; repeats leave the command
    and the audit log untouched.
    """
    command = store.get_command(command_id)
    # A device may only report on its own commands; others look nonexistent
    if command is None or (device_id is not None and command.device_id != device_id):
        structured_logger.log_event(
            "command.result_unknown",
            level="WARN",
            command_id=command_id,
            device_id=device_id
        )
        raise NotFoundError(f"Command {command_id} not found")

    payload = dict(response or {})
    payload["success"] = success
    if error:
        payload["error"] = error

    command, applied = store.complete_command(command_id, success, payload)

    if not applied:
        structured_logger.log_event(
            "command.result_duplicate",
            command_id=command_id,
            device_id=command.device_id,
            status=command.status,
            message="idempotent_repost"
        )
        return command, False

    metrics.inc_counter("command_results_total", {"status": command.status})
    structured_logger.log_event(
        "command.result_recorded",
        command_id=command_id,
        device_id=command.device_id,
        command=command.command,
        status=command.status,
        reported_by=reported_by
    )

    action = "command_completed" if command.status == COMMAND_COMPLETED else "command_failed"
    store.create_device_log(command.device_id, action, {
        "commandId": command.id,
        "command": command.command,
        "error": error,
        "reportedBy": reported_by,
    })
    return command, True


def apply_control(
    store: DatabaseStorage,
    device_id: int,
    action: str,
    enabled: bool,
    issued_by: str = "admin"
) -> DeviceCommand:
    validate_control_action(action)
    store.require_device(device_id)

    command = store.create_device_command(device_id, control_command_name(action, enabled), issued_by)
    metrics.inc_counter("commands_created_total", {"source": "control"})

    store.create_device_log(device_id, control_log_action(action, enabled), {
        "action": action,
        "enabled": enabled,
    })
    structured_logger.log_event(
        "control.applied",
        device_id=device_id,
        command_id=command.id,
        command=command.command
    )
    return command


def apply_bulk_controls(
    store: DatabaseStorage,
    device_ids: list[int],
    controls: dict[str, bool],
    issued_by: str = "admin"
) -> list[dict]:
    """
    Fan controls out to many devices, one device at a time.

    All actions are validated before the first write. After that each device
    is independent: a failure is reported in that device's result and the
    loop moves on without undoing anything already queued.
    """
    for action in controls:
        validate_control_action(action)

    results = []
    for device_id in device_ids:
        queued = []
        try:
            store.require_device(device_id)
            for action, enabled in controls.items():
                command = store.create_device_command(
                    device_id, control_command_name(action, enabled), issued_by
                )
                queued.append(command.command)
                store.create_device_log(device_id, f"bulk_{control_log_action(action, enabled)}", {
                    "action": action,
                    "enabled": enabled,
                    "bulk": True,
                })
        except (NotFoundError, StoreError) as e:
            metrics.inc_counter("bulk_control_failures_total")
            structured_logger.log_event(
                "bulk_controls.device_failed",
                level="WARN",
                device_id=device_id,
                queued_before_failure=queued,
                error=e.message
            )
            results.append({"deviceId": device_id, "status": "failed", "error": e.message, "commands": queued})
            continue

        metrics.inc_counter("commands_created_total", {"source": "bulk"}, value=len(queued))
        results.append({"deviceId": device_id, "status": "commands_queued", "commands": queued})

    return results


def set_kiosk_mode(
    store: DatabaseStorage,
    device_id: int,
    enabled: bool,
    kiosk_config: Optional[dict] = None,
    issued_by: str = "admin"
) -> tuple[Device, DeviceCommand]:
    """
    Store the desired kiosk state and queue the command that applies it.
    The device's own is_kiosk_mode report on later heartbeats overrides the flag.
    """
    store.require_device(device_id)

    updates = {"is_kiosk_mode": enabled, "kiosk_config": kiosk_config or {}}
    if kiosk_config and kiosk_config.get("lockedApp"):
        updates["kiosk_app_package"] = kiosk_config["lockedApp"]
    device = store.update_device(device_id, **updates)

    command = store.create_device_command(device_id, f"kiosk_{'enable' if enabled else 'disable'}", issued_by)
    metrics.inc_counter("commands_created_total", {"source": "kiosk"})

    store.create_device_log(device_id, f"kiosk_{'enabled' if enabled else 'disabled'}", {
        "config": kiosk_config,
        "commandId": command.id,
    })
    return device, command


def emergency_action(
    store: DatabaseStorage,
    device_id: int,
    action: str,
    admin_password: Optional[str],
    reason: Optional[str],
    expected_password: Optional[str]
) -> DeviceCommand:
    """
    Privileged lock/wipe. Every precondition is checked before any write,
    and the stored audit entry never contains the secret.
    """
    if not secrets_match(admin_password, expected_password):
        metrics.inc_counter("emergency_actions_total", {"result": "unauthorized"})
        structured_logger.log_event(
            "emergency.rejected",
            level="WARN",
            device_id=device_id,
            action=action,
            reason="invalid_admin_password"
        )
        raise AuthorizationError("Invalid admin password")

    if action not in EMERGENCY_ACTIONS:
        raise ValidationError("Invalid emergency action")

    if not reason or not reason.strip():
        raise ValidationError("A reason is required for emergency actions")

    store.require_device(device_id)

    command = store.create_device_command(device_id, f"emergency_{action}", "admin")
    metrics.inc_counter("emergency_actions_total", {"result": "queued"})

    store.create_device_log(device_id, f"emergency_{action}", {
        "action": action,
        "reason": reason.strip(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "commandId": command.id,
        "adminPassword": REDACTED,
    })
    structured_logger.log_event(
        "emergency.queued",
        level="WARN",
        device_id=device_id,
        command_id=command.id,
        action=action
    )
    return command

"""
Persistence layer for devices, the command queue, the audit log and chat
messages.

DatabaseStorage wraps one SQLAlchemy session. Every write commits on its
own, so each create/update is atomic per row and nothing spans records;
callers that need two writes for one event (command + audit entry) make two
calls and accept that the second can fail after the first succeeded.
"""
import json
import time
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from fastapi import Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, StoreError, ValidationError
from models import ChatMessage, Device, DeviceCommand, DeviceLog, ensure_utc, get_db, utcnow
from observability import structured_logger, metrics

T = TypeVar("T")

COMMAND_PENDING = "pending"
COMMAND_COMPLETED = "completed"
COMMAND_FAILED = "failed"
TERMINAL_STATUSES = (COMMAND_COMPLETED, COMMAND_FAILED)

IMEI_LENGTH = 15

# Columns a caller may change through update_device; identity, credentials
# and enrollment time are fixed.
UPDATABLE_DEVICE_FIELDS = {
    "name", "device_type", "is_online", "battery_level", "location",
    "last_seen", "os_version", "app_version", "fcm_token", "is_kiosk_mode", "wifi_enabled",
    "kiosk_app_package", "kiosk_config", "policies",
}
JSON_DEVICE_FIELDS = {"kiosk_config", "policies"}


def _dump(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class DatabaseStorage:
    def __init__(self, db: Session):
        self.db = db

    def _write(self, operation: str, fn: Callable[[], T]) -> T:
        """Run one write and commit it; roll back and wrap store failures."""
        start = time.time()
        try:
            result = fn()
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            structured_logger.log_event(
                "store.conflict",
                level="WARN",
                operation=operation,
                error=str(e.orig)
            )
            raise ConflictError(f"{operation} violates a uniqueness constraint")
        except SQLAlchemyError as e:
            self.db.rollback()
            metrics.inc_counter("store_errors_total", {"operation": operation})
            structured_logger.log_event(
                "store.error",
                level="ERROR",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__
            )
            raise StoreError(f"Store failure during {operation}") from e
        metrics.observe_histogram("store_write_latency_ms", (time.time() - start) * 1000, {"operation": operation})
        return result

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except SQLAlchemyError as e:
            self.db.rollback()
            structured_logger.log_event(
                "store.error",
                level="ERROR",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__
            )
            raise StoreError(f"Store failure during {operation}") from e

    # --- Devices ---

    def get_devices(self) -> list[Device]:
        return self._read("get_devices", lambda: self.db.query(Device).order_by(Device.id).all())

    def get_device(self, device_id: int) -> Optional[Device]:
        return self._read("get_device", lambda: self.db.get(Device, device_id))

    def require_device(self, device_id: int) -> Device:
        device = self.get_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        return device

    def get_device_by_imei(self, imei: str) -> Optional[Device]:
        """
        Look up a device by IMEI.

        The length check runs before the query so a malformed IMEI is
        rejected whether or not a matching row exists.
        """
        if not imei or len(imei) != IMEI_LENGTH:
            raise ValidationError("Invalid IMEI format")
        return self._read(
            "get_device_by_imei",
            lambda: self.db.query(Device).filter(Device.imei == imei).first()
        )

    def get_device_by_token_id(self, token_id: str) -> Optional[Device]:
        return self._read(
            "get_device_by_token_id",
            lambda: self.db.query(Device).filter(Device.token_id == token_id).first()
        )

    def create_device(self, **fields) -> Device:
        for key in JSON_DEVICE_FIELDS & fields.keys():
            fields[key] = _dump(fields[key])

        def _create():
            now = utcnow()
            device = Device(enrolled_at=now, updated_at=now, **fields)
            self.db.add(device)
            self.db.flush()
            return device

        return self._write("create_device", _create)

    def update_device(self, device_id: int, **updates) -> Device:
        unknown = set(updates) - UPDATABLE_DEVICE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update device fields: {', '.join(sorted(unknown))}")
        device = self.require_device(device_id)

        def _update():
            for key, value in updates.items():
                setattr(device, key, _dump(value) if key in JSON_DEVICE_FIELDS else value)
            device.updated_at = utcnow()
            return device

        return self._write("update_device", _update)

    def set_device_credentials(self, device_id: int, token_hash: str, token_id: str) -> Device:
        device = self.require_device(device_id)

        def _update():
            device.token_hash = token_hash
            device.token_id = token_id
            device.updated_at = utcnow()
            return device

        return self._write("set_device_credentials", _update)

    def delete_device(self, device_id: int) -> None:
        device = self.require_device(device_id)
        self._write("delete_device", lambda: self.db.delete(device))

    # --- Commands ---

    def create_device_command(self, device_id: int, command: str, issued_by: Optional[str] = None) -> DeviceCommand:
        def _create():
            # Status is not a parameter: every command starts pending
            record = DeviceCommand(
                device_id=device_id,
                command=command,
                status=COMMAND_PENDING,
                issued_by=issued_by,
                issued_at=utcnow(),
            )
            self.db.add(record)
            self.db.flush()
            return record

        return self._write("create_device_command", _create)

    def get_device_commands(self, device_id: int) -> list[DeviceCommand]:
        return self._read(
            "get_device_commands",
            lambda: self.db.query(DeviceCommand).filter(
                DeviceCommand.device_id == device_id
            ).order_by(DeviceCommand.issued_at, DeviceCommand.id).all()
        )

    def get_pending_commands(self, device_id: int) -> list[DeviceCommand]:
        return self._read(
            "get_pending_commands",
            lambda: self.db.query(DeviceCommand).filter(
                DeviceCommand.device_id == device_id,
                DeviceCommand.status == COMMAND_PENDING
            ).order_by(DeviceCommand.issued_at, DeviceCommand.id).all()
        )

    def get_command(self, command_id: int) -> Optional[DeviceCommand]:
        return self._read("get_command", lambda: self.db.get(DeviceCommand, command_id))

    def complete_command(
        self,
        command_id: int,
        success: bool,
        response: Optional[dict] = None,
        completed_at: Optional[datetime] = None,
    ) -> tuple[DeviceCommand, bool]:
        """
        Move a pending command to completed or failed.

        Returns (command, applied). A command that already reached a terminal
        status is returned untouched with applied=False.
        """
        command = self.get_command(command_id)
        if command is None:
            raise NotFoundError(f"Command {command_id} not found")
        if command.status in TERMINAL_STATUSES:
            return command, False

        def _complete():
            command.status = COMMAND_COMPLETED if success else COMMAND_FAILED
            command.completed_at = completed_at or utcnow()
            command.response = _dump(response)
            return command

        return self._write("complete_command", _complete), True

    # --- Audit log ---

    def create_device_log(self, device_id: int, action: str, details: Optional[dict] = None) -> DeviceLog:
        def _create():
            entry = DeviceLog(
                device_id=device_id,
                action=action,
                details=_dump(details),
                timestamp=utcnow(),
            )
            self.db.add(entry)
            self.db.flush()
            return entry

        return self._write("create_device_log", _create)

    def get_device_logs(self, device_id: int) -> list[DeviceLog]:
        return self._read(
            "get_device_logs",
            lambda: self.db.query(DeviceLog).filter(
                DeviceLog.device_id == device_id
            ).order_by(DeviceLog.timestamp, DeviceLog.id).all()
        )

    # --- Chat ---

    def create_chat_message(self, user_id: Optional[str], message: str, response: Optional[str] = None) -> ChatMessage:
        def _create():
            record = ChatMessage(user_id=user_id, message=message, response=response, timestamp=utcnow())
            self.db.add(record)
            self.db.flush()
            return record

        return self._write("create_chat_message", _create)

    def get_chat_messages(self, user_id: str) -> list[ChatMessage]:
        return self._read(
            "get_chat_messages",
            lambda: self.db.query(ChatMessage).filter(
                ChatMessage.user_id == user_id
            ).order_by(ChatMessage.timestamp, ChatMessage.id).all()
        )


def get_storage(db: Session = Depends(get_db)) -> DatabaseStorage:
    return DatabaseStorage(db)


# --- JSON shapes ---

def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


def serialize_command(command: DeviceCommand) -> dict:
    return {
        "id": command.id,
        "deviceId": command.device_id,
        "command": command.command,
        "status": command.status,
        "issuedBy": command.issued_by,
        "issuedAt": _iso(command.issued_at),
        "completedAt": _iso(command.completed_at),
        "response": _load(command.response),
    }


def serialize_log(entry: DeviceLog) -> dict:
    return {
        "id": entry.id,
        "deviceId": entry.device_id,
        "action": entry.action,
        "details": _load(entry.details),
        "timestamp": _iso(entry.timestamp),
    }


def serialize_device(device: Device, status: str) -> dict:
    return {
        "id": device.id,
        "name": device.name,
        "imei": device.imei,
        "serialNumber": device.serial_number,
        "deviceType": device.device_type,
        "status": status,
        "batteryLevel": device.battery_level,
        "location": device.location,
        "wifiEnabled": device.wifi_enabled,
        "lastSeen": _iso(device.last_seen),
        "osVersion": device.os_version,
        "appVersion": device.app_version,
        "fcmToken": device.fcm_token,
        "isKioskMode": device.is_kiosk_mode,
        "kioskAppPackage": device.kiosk_app_package,
        "kioskConfig": _load(device.kiosk_config),
        "policies": _load(device.policies),
        "enrolledAt": _iso(device.enrolled_at),
        "updatedAt": _iso(device.updated_at),
        "enrolled": device.token_id is not None,
    }


def serialize_chat_message(record: ChatMessage) -> dict:
    return {
        "id": record.id,
        "userId": record.user_id,
        "message": record.message,
        "response": record.response,
        "timestamp": _iso(record.timestamp),
    }

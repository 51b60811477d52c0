from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional, Union
from datetime import datetime


class StrictModel(BaseModel):
    """Request bodies reject fields they do not declare."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


DeviceType = Literal["android", "ios", "windows"]


class Coordinates(StrictModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


Location = Union[str, Coordinates]


class KioskConfig(StrictModel):
    locked_app: Optional[str] = Field(None, alias="lockedApp", max_length=200)
    allowed_apps: list[str] = Field(default_factory=list, alias="allowedApps")
    home_screen_url: Optional[str] = Field(None, alias="homeScreenUrl", max_length=500)
    auto_start_apps: list[str] = Field(default_factory=list, alias="autoStartApps")
    disable_settings: bool = Field(False, alias="disableSettings")
    disable_status_bar: bool = Field(False, alias="disableStatusBar")
    exit_code: Optional[str] = Field(None, alias="exitCode", max_length=50)


class DeviceCreateRequest(StrictModel):
    name: str = Field(..., min_length=1, max_length=200)
    imei: Optional[str] = Field(None, min_length=1, max_length=64)
    serial_number: Optional[str] = Field(None, alias="serialNumber", min_length=1, max_length=100)
    device_type: DeviceType = Field(..., alias="deviceType")
    fcm_token: Optional[str] = Field(None, alias="fcmToken", max_length=500)
    is_kiosk_mode: bool = Field(False, alias="isKioskMode")
    kiosk_app_package: Optional[str] = Field(None, alias="kioskAppPackage", max_length=200)
    kiosk_config: Optional[KioskConfig] = Field(None, alias="kioskConfig")


class DeviceUpdateRequest(StrictModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    device_type: Optional[DeviceType] = Field(None, alias="deviceType")
    fcm_token: Optional[str] = Field(None, alias="fcmToken", max_length=500)
    kiosk_app_package: Optional[str] = Field(None, alias="kioskAppPackage", max_length=200)
    policies: Optional[dict[str, bool]] = None


class CommandCreateRequest(StrictModel):
    command: str = Field(..., min_length=1, max_length=100)
    issued_by: Optional[str] = Field(None, alias="issuedBy", max_length=200)
    # Accepted for compatibility with older consoles and ignored: commands always start pending
    status: Optional[str] = Field(None, max_length=50)

    @field_validator("command")
    @classmethod
    def strip_command(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("command must not be blank")
        return v


class CommandResultRequest(StrictModel):
    success: bool
    error: Optional[str] = Field(None, max_length=1000)
    response: Optional[dict] = None
    timestamp: Optional[datetime] = None


class ControlRequest(StrictModel):
    action: str = Field(..., min_length=1, max_length=50)
    enabled: bool


class BulkControlRequest(StrictModel):
    device_ids: list[int] = Field(..., alias="deviceIds", min_length=1, max_length=1000)
    controls: dict[str, bool] = Field(..., min_length=1)


class KioskRequest(StrictModel):
    enabled: bool
    config: Optional[KioskConfig] = None


class EmergencyRequest(StrictModel):
    action: str = Field(..., max_length=50)
    # Optional so a missing password is an authorization failure, not a schema error
    admin_password: Optional[str] = Field(None, alias="adminPassword", max_length=200)
    reason: Optional[str] = Field(None, max_length=1000)


class DeviceInfo(StrictModel):
    device_name: str = Field(..., alias="deviceName", min_length=1, max_length=200)
    imei: Optional[str] = Field(None, min_length=1, max_length=64)
    serial_number: Optional[str] = Field(None, alias="serialNumber", min_length=1, max_length=100)
    device_type: DeviceType = Field("android", alias="deviceType")
    os_version: Optional[str] = Field(None, alias="osVersion", max_length=50)
    app_version: Optional[str] = Field(None, alias="appVersion", max_length=50)
    battery_level: int = Field(0, alias="batteryLevel", ge=0, le=100)
    location: Optional[Location] = None
    fcm_token: Optional[str] = Field(None, alias="fcmToken", max_length=500)
    is_online: Optional[bool] = Field(None, alias="isOnline")
    is_kiosk_mode: Optional[bool] = Field(None, alias="isKioskMode")
    wifi_enabled: Optional[bool] = Field(None, alias="wifiEnabled")
    # Client clock; the server stamps its own time
    last_seen: Optional[datetime] = Field(None, alias="lastSeen")


class EnrollRequest(StrictModel):
    enrollment_code: Optional[str] = Field(None, alias="enrollmentCode", max_length=200)
    device_info: DeviceInfo = Field(..., alias="deviceInfo")


class DeviceStatusPayload(StrictModel):
    battery_level: int = Field(..., alias="batteryLevel", ge=0, le=100)
    is_online: bool = Field(..., alias="isOnline")
    is_kiosk_mode: Optional[bool] = Field(None, alias="isKioskMode")
    location: Optional[Location] = None
    wifi_enabled: Optional[bool] = Field(None, alias="wifiEnabled")
    app_version: Optional[str] = Field(None, alias="appVersion", max_length=50)
    os_version: Optional[str] = Field(None, alias="osVersion", max_length=50)
    fcm_token: Optional[str] = Field(None, alias="fcmToken", max_length=500)
    # Identity echoes from the client; the bearer token is authoritative
    imei: Optional[str] = Field(None, max_length=64)
    serial_number: Optional[str] = Field(None, alias="serialNumber", max_length=100)
    device_name: Optional[str] = Field(None, alias="deviceName", max_length=200)
    last_seen: Optional[datetime] = Field(None, alias="lastSeen")


class ChatMessageRequest(StrictModel):
    user_id: Optional[str] = Field(None, alias="userId", min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=4000)

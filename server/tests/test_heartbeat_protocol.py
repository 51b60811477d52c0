"""
Contract tests for the device protocol.
Tests /api/enroll, /api/device/status
"""
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from auth import compute_token_id
from heartbeat import record_status
from models import Device, DeviceLog, ensure_utc, utcnow
from schemas import DeviceStatusPayload

TEST_IMEI = "356938035643809"


def _enroll_body(code: str, **device_info) -> dict:
    info = {
        "deviceName": "Lobby Kiosk",
        "imei": TEST_IMEI,
        "deviceType": "android",
        "osVersion": "14",
        "appVersion": "1.0.0",
        "batteryLevel": 90,
    }
    info.update(device_info)
    return {"enrollmentCode": code, "deviceInfo": info}


class TestEnroll:
    """Tests for POST /api/enroll"""

    def test_enroll_success(self, client: TestClient, test_db: Session, mdm_secrets):
        """200: Valid code creates the device and returns its bearer token"""
        response = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"]))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["serverVersion"] == "1.0.0"
        assert data["token"]

        device = test_db.get(Device, data["deviceId"])
        assert device.name == "Lobby Kiosk"
        assert device.imei == TEST_IMEI
        assert device.token_id == compute_token_id(data["token"])
        assert device.token_hash != data["token"]
        assert device.last_seen is not None

    def test_enroll_stores_wifi_state(self, client: TestClient, test_db: Session, mdm_secrets):
        data = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"], wifiEnabled=True)).json()

        assert test_db.get(Device, data["deviceId"]).wifi_enabled is True

    def test_enroll_audit_entry_has_no_token(self, client: TestClient, test_db: Session, mdm_secrets, capture_logs):
        """200: Enrollment is audit-logged and the token is never written out"""
        data = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"])).json()

        entries = test_db.query(DeviceLog).filter(DeviceLog.device_id == data["deviceId"]).all()
        assert [entry.action for entry in entries] == ["enrolled"]
        assert data["token"] not in entries[0].details
        assert data["token"] not in json.dumps(capture_logs, default=str)

    def test_enrolled_token_authenticates(self, client: TestClient, mdm_secrets):
        """200: The returned token works on the device endpoints"""
        token = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"])).json()["token"]

        response = client.get("/api/device/commands", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.parametrize("code", ["wrong-code", None])
    def test_enroll_400_bad_code(self, client: TestClient, test_db: Session, mdm_secrets, code):
        """400: Missing or wrong enrollment code creates nothing"""
        response = client.post("/api/enroll", json=_enroll_body(code))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid enrollment code"
        assert test_db.query(Device).count() == 0

    def test_enroll_400_when_code_not_configured(self, client: TestClient, monkeypatch):
        """400: With no configured code every enrollment is rejected"""
        monkeypatch.delenv("MDM_ENROLLMENT_CODE", raising=False)

        response = client.post("/api/enroll", json=_enroll_body("anything"))

        assert response.status_code == 400

    def test_enroll_400_without_identity(self, client: TestClient, mdm_secrets):
        """400: Self-enrollment needs an IMEI or a serial number"""
        response = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"], imei=None))

        assert response.status_code == 400

    def test_enroll_409_duplicate_imei(self, client: TestClient, mdm_secrets, console_device):
        """409: IMEI is unique across devices"""
        response = client.post("/api/enroll", json=_enroll_body(mdm_secrets["enrollment_code"]))

        assert response.status_code == 409

    def test_enroll_400_out_of_range_battery(self, client: TestClient, mdm_secrets):
        """400: Battery is a percentage"""
        response = client.post(
            "/api/enroll",
            json=_enroll_body(mdm_secrets["enrollment_code"], batteryLevel=140)
        )

        assert response.status_code == 400


class TestDeviceStatus:
    """Tests for POST /api/device/status"""

    def test_status_overwrites_telemetry(self, client: TestClient, test_db: Session, test_device, device_auth):
        """200: Heartbeat stores battery, location and versions"""
        device, _ = test_device
        response = client.post("/api/device/status", headers=device_auth, json={
            "batteryLevel": 42,
            "isOnline": True,
            "isKioskMode": True,
            "location": {"latitude": 40.7128, "longitude": -74.006},
            "appVersion": "1.1.0",
            "osVersion": "14",
        })

        assert response.status_code == 200
        assert response.json() == {"success": True}

        test_db.expire_all()
        stored = test_db.get(Device, device.id)
        assert stored.battery_level == 42
        assert stored.is_kiosk_mode is True
        assert json.loads(stored.location) == {"latitude": 40.7128, "longitude": -74.006}
        assert stored.app_version == "1.1.0"
        assert stored.is_online is True

    def test_status_stores_wifi_state(self, client: TestClient, test_db: Session, test_device, device_auth):
        """200: wifiEnabled is kept; a heartbeat without it leaves the last value"""
        device, _ = test_device
        client.post("/api/device/status", headers=device_auth, json={
            "batteryLevel": 50, "isOnline": True, "wifiEnabled": False
        })
        client.post("/api/device/status", headers=device_auth, json={"batteryLevel": 49, "isOnline": True})

        test_db.expire_all()
        assert test_db.get(Device, device.id).wifi_enabled is False
        assert client.get(f"/api/devices/{device.id}").json()["wifiEnabled"] is False

    def test_status_advances_last_seen(self, client: TestClient, test_db: Session, test_device, device_auth):
        """200: last_seen moves forward on every heartbeat"""
        device, _ = test_device
        device.last_seen = utcnow() - timedelta(minutes=30)
        test_db.commit()
        before = ensure_utc(test_db.get(Device, device.id).last_seen)

        client.post("/api/device/status", headers=device_auth, json={"batteryLevel": 50, "isOnline": True})

        test_db.expire_all()
        assert ensure_utc(test_db.get(Device, device.id).last_seen) > before

    def test_status_offline_report(self, client: TestClient, test_device, device_auth):
        """200: An explicit offline report is reflected in derived status"""
        device, _ = test_device
        client.post("/api/device/status", headers=device_auth, json={"batteryLevel": 50, "isOnline": False})

        assert client.get(f"/api/devices/{device.id}").json()["status"] == "offline"

    def test_status_writes_no_audit_entry(self, client: TestClient, test_db: Session, test_device, device_auth):
        """200: Heartbeats are telemetry, not audit events"""
        device, _ = test_device
        client.post("/api/device/status", headers=device_auth, json={"batteryLevel": 50, "isOnline": True})

        assert test_db.query(DeviceLog).filter(DeviceLog.device_id == device.id).count() == 0

    @pytest.mark.parametrize("body", [
        {"isOnline": True},
        {"batteryLevel": 50},
        {"batteryLevel": -1, "isOnline": True},
        {"batteryLevel": 50, "isOnline": True, "rooted": True},
    ])
    def test_status_400_invalid_payload(self, client: TestClient, device_auth, body):
        """400: Required fields, ranges and unknown fields are enforced"""
        response = client.post("/api/device/status", headers=device_auth, json=body)

        assert response.status_code == 400

    def test_status_401_without_token(self, client: TestClient, test_device):
        """401: Status pushes require the bearer token"""
        response = client.post("/api/device/status", json={"batteryLevel": 50, "isOnline": True})

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing authorization header"


class TestRecordStatus:
    """Tests for heartbeat.record_status"""

    def test_last_seen_never_moves_backwards(self, store, test_device):
        device, _ = test_device
        later = utcnow() + timedelta(minutes=5)
        record_status(store, device, DeviceStatusPayload(batteryLevel=70, isOnline=True), now=later)

        earlier = later - timedelta(minutes=10)
        updated = record_status(store, device, DeviceStatusPayload(batteryLevel=69, isOnline=True), now=earlier)

        assert ensure_utc(updated.last_seen) == later
        assert updated.battery_level == 69

    def test_plain_string_location_is_kept(self, store, test_device):
        device, _ = test_device
        updated = record_status(
            store, device, DeviceStatusPayload(batteryLevel=70, isOnline=True, location="Building 2")
        )

        assert updated.location == "Building 2"

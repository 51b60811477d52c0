"""
Status derivation and the read paths that depend on it.
Tests heartbeat.derive_status, /api/devices, /api/stats
"""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from heartbeat import derive_status, fleet_stats
from models import Device, utcnow


NOW = utcnow()


class TestDeriveStatus:

    def test_never_seen_is_offline(self):
        assert derive_status(None, True, NOW) == "offline"

    def test_fresh_heartbeat_is_online(self):
        assert derive_status(NOW - timedelta(seconds=30), True, NOW) == "online"

    def test_explicit_offline_report_wins_over_freshness(self):
        assert derive_status(NOW, False, NOW) == "offline"

    def test_stale_heartbeat_is_warning(self):
        assert derive_status(NOW - timedelta(minutes=10), True, NOW) == "warning"

    def test_very_stale_heartbeat_is_offline(self):
        assert derive_status(NOW - timedelta(hours=2), True, NOW) == "offline"

    def test_unknown_online_flag_uses_staleness(self):
        assert derive_status(NOW - timedelta(seconds=5), None, NOW) == "online"

    def test_naive_timestamps_are_utc(self):
        naive = (NOW - timedelta(seconds=5)).replace(tzinfo=None)
        assert derive_status(naive, True, NOW) == "online"

    def test_thresholds_come_from_config(self, monkeypatch):
        monkeypatch.setenv("STATUS_WARNING_AFTER_SECONDS", "10")
        monkeypatch.setenv("STATUS_OFFLINE_AFTER_SECONDS", "20")

        assert derive_status(NOW - timedelta(seconds=15), True, NOW) == "warning"
        assert derive_status(NOW - timedelta(seconds=25), True, NOW) == "offline"


def _device(test_db: Session, name: str, **fields) -> Device:
    now = utcnow()
    device = Device(name=name, device_type="android", enrolled_at=now, updated_at=now, **fields)
    test_db.add(device)
    test_db.commit()
    test_db.refresh(device)
    return device


class TestReadPaths:

    def test_list_uses_staleness_over_online_report(self, client: TestClient, test_db: Session):
        """200: A device whose last report was online but silent for hours reads as offline"""
        device = _device(test_db, "Silent", is_online=True,
                         last_seen=utcnow() - timedelta(hours=3))

        listed = client.get("/api/devices").json()

        assert [(d["id"], d["status"]) for d in listed] == [(device.id, "offline")]

    def test_detail_matches_list(self, client: TestClient, test_db: Session):
        device = _device(test_db, "Quiet", is_online=True, last_seen=utcnow() - timedelta(minutes=15))

        assert client.get(f"/api/devices/{device.id}").json()["status"] == "warning"
        assert client.get("/api/devices").json()[0]["status"] == "warning"

    def test_stats_counts(self, client: TestClient, test_db: Session):
        """200: Totals by derived status plus battery and kiosk counts"""
        now = utcnow()
        _device(test_db, "Online", is_online=True, last_seen=now, battery_level=80)
        _device(test_db, "Low", is_online=True, last_seen=now, battery_level=10, is_kiosk_mode=True)
        _device(test_db, "Warning", is_online=True, last_seen=now - timedelta(minutes=10), battery_level=50)
        _device(test_db, "Never seen", battery_level=100)

        stats = client.get("/api/stats").json()

        assert stats["totalDevices"] == 4
        assert stats["onlineDevices"] == 2
        assert stats["warningDevices"] == 1
        assert stats["offlineDevices"] == 1
        assert stats["lowBatteryDevices"] == 1
        assert stats["kioskDevices"] == 1
        assert stats["criticalAlerts"] == 2
        assert stats["policyViolations"] == 2

    def test_stats_empty_fleet(self):
        assert fleet_stats([])["totalDevices"] == 0


class TestConsoleDevices:
    """Tests for /api/devices CRUD"""

    def test_create_minimal_device(self, client: TestClient):
        """201: Console devices need only a name and type"""
        response = client.post("/api/devices", json={"name": "Pixel", "deviceType": "android"})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "offline"
        assert data["enrolled"] is False
        assert data["imei"] is None

    def test_create_400_bad_device_type(self, client: TestClient):
        response = client.post("/api/devices", json={"name": "Phone", "deviceType": "blackberry"})

        assert response.status_code == 400

    def test_create_409_duplicate_serial(self, client: TestClient):
        body = {"name": "Tab", "deviceType": "android", "serialNumber": "R58N123"}
        client.post("/api/devices", json=body)

        assert client.post("/api/devices", json=body).status_code == 409

    def test_update_device(self, client: TestClient, console_device: Device):
        response = client.put(f"/api/devices/{console_device.id}", json={
            "name": "Renamed",
            "policies": {"camera": False}
        })

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["policies"] == {"camera": False}

    def test_update_400_identity_fields(self, client: TestClient, console_device: Device):
        """400: IMEI is not editable"""
        response = client.put(f"/api/devices/{console_device.id}", json={"imei": "000000000000000"})

        assert response.status_code == 400

    def test_get_by_imei(self, client: TestClient, console_device: Device):
        assert client.get(f"/api/devices/by-imei/{console_device.imei}").json()["id"] == console_device.id
        assert client.get("/api/devices/by-imei/111111111111111").status_code == 404
        assert client.get("/api/devices/by-imei/12345").status_code == 400

    def test_delete_device_keeps_logs(self, client: TestClient, console_device: Device):
        client.post(f"/api/devices/{console_device.id}/commands", json={"command": "wipe"})

        response = client.delete(f"/api/devices/{console_device.id}")

        assert response.status_code == 200
        assert client.get(f"/api/devices/{console_device.id}").status_code == 404
        assert [e["action"] for e in client.get(f"/api/devices/{console_device.id}/logs").json()] == [
            "command_issued_wipe"
        ]

    @pytest.mark.parametrize("method", ["get", "delete"])
    def test_404_unknown_device(self, client: TestClient, method):
        assert getattr(client, method)("/api/devices/5150").status_code == 404

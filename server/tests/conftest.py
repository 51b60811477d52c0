"""
Pytest configuration and shared fixtures for the API and service tests.
"""
import pytest
import os
import sys
from typing import Generator, Dict
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db, Device
from main import app
from auth import hash_token, generate_device_token, compute_token_id
from models import utcnow
from observability import metrics
from storage import DatabaseStorage

ENROLLMENT_CODE = "enroll-test-code"
EMERGENCY_PASSWORD = "emergency-test-password"
ADMIN_KEY = "test-admin-key"
TEST_IMEI = "356938035643809"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a clean test database for each test.
    Uses in-memory SQLite for fast test execution.
    """
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def store(test_db: Session) -> DatabaseStorage:
    return DatabaseStorage(test_db)


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create a test client with dependency overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(scope="function")
def mdm_secrets(monkeypatch) -> Dict[str, str]:
    """
    Configure the enrollment code, emergency password and admin key.
    """
    monkeypatch.setenv("MDM_ENROLLMENT_CODE", ENROLLMENT_CODE)
    monkeypatch.setenv("ADMIN_EMERGENCY_PASSWORD", EMERGENCY_PASSWORD)
    monkeypatch.setenv("ADMIN_KEY", ADMIN_KEY)
    return {
        "enrollment_code": ENROLLMENT_CODE,
        "emergency_password": EMERGENCY_PASSWORD,
        "admin_key": ADMIN_KEY,
    }


@pytest.fixture(scope="function")
def admin_key(mdm_secrets) -> Dict[str, str]:
    """
    Return admin key headers.
    """
    return {"X-Admin": mdm_secrets["admin_key"]}


@pytest.fixture(scope="function")
def console_device(test_db: Session) -> Device:
    """
    A console-created device: no credential, never seen.
    """
    now = utcnow()
    device = Device(
        name="Front Desk Tablet",
        imei=TEST_IMEI,
        device_type="android",
        battery_level=80,
        enrolled_at=now,
        updated_at=now,
    )
    test_db.add(device)
    test_db.commit()
    test_db.refresh(device)
    return device


@pytest.fixture(scope="function")
def test_device(test_db: Session) -> tuple[Device, str]:
    """
    Create an enrolled device and return it with its bearer token.
    Returns: (device, raw_token)
    """
    raw_token = generate_device_token()
    now = utcnow()

    device = Device(
        name="Warehouse Scanner 01",
        serial_number="SN-TEST-001",
        device_type="android",
        battery_level=64,
        is_online=True,
        last_seen=now,
        app_version="1.0.0",
        enrolled_at=now,
        updated_at=now,
        token_hash=hash_token(raw_token),
        token_id=compute_token_id(raw_token),
    )
    test_db.add(device)
    test_db.commit()
    test_db.refresh(device)

    return (device, raw_token)


@pytest.fixture(scope="function")
def device_auth(test_device: tuple[Device, str]) -> Dict[str, str]:
    """
    Return device authentication headers.
    """
    _, raw_token = test_device
    return {"Authorization": f"Bearer {raw_token}"}


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs

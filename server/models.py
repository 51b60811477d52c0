from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Index, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from typing import Optional
from config import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    imei: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    device_type: Mapped[str] = mapped_column(String, nullable=False)

    # No status column: status is derived on read from last_seen and is_online
    is_online: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    battery_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    wifi_enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    os_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    app_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    fcm_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    is_kiosk_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    kiosk_app_package: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    kiosk_config: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    policies: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Console-created devices have no credential until they enroll
    token_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    token_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)

    __table_args__ = (
        Index('idx_device_token_lookup', 'token_id'),
    )


class DeviceCommand(Base):
    __tablename__ = "device_commands"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No FK: command history outlives deleted devices
    device_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    command: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    issued_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('idx_command_poll', 'device_id', 'status'),
        Index('idx_command_issued', 'issued_at'),
    )


class DeviceLog(Base):
    __tablename__ = "device_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_device_log_query', 'device_id', 'timestamp'),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


DATABASE_URL = config.get_database_url()

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,
        max_overflow=20,
        pool_pre_ping=True,    # Verify connections before use
        pool_recycle=3600,
        pool_timeout=30
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

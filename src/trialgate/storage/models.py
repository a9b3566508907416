"""SQLAlchemy ORM models for license server data.

All timestamps are stored as naive UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Device(Base):
    """One desktop installation, created on its first heartbeat."""

    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    trial_started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    registered_key_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    key_hint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    app_version: Mapped[str] = mapped_column(String(32), default="")
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    heartbeat_count_today: Mapped[int] = mapped_column(Integer, default=0)
    heartbeat_date_bucket: Mapped[str] = mapped_column(String(10), default="")  # YYYY-MM-DD (UTC)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RegistrationKey(Base):
    """A purchased registration key, identified only by its SHA-256 hash."""

    __tablename__ = "registration_keys"

    key_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    max_devices: Mapped[int] = mapped_column(Integer, default=3)
    valid: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    validated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class KeyDevice(Base):
    """Membership of a device in a registration key's device set."""

    __tablename__ = "key_devices"

    key_hash: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("registration_keys.key_hash", ondelete="CASCADE"),
        primary_key=True,
    )
    # No FK to devices: a member whose device record was deleted is stale, not invalid
    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PolicyConfig(Base):
    """Singleton server policy record."""

    __tablename__ = "policy_config"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default="current")
    latest_version: Mapped[str] = mapped_column(String(32), default="0.1.0")
    trial_days: Mapped[int] = mapped_column(Integer, default=30)
    token_expiry_days: Mapped[int] = mapped_column(Integer, default=30)
    server_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    force_update_below_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

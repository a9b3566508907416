"""Repository protocol interfaces for license server storage.

The services only see plain records and these protocols, so the backing
store can be swapped (SQLite, PostgreSQL, a document store) without
changing heartbeat or registration logic.

All reads and writes happen inside a :class:`StoreTransaction`. One
transaction is atomic: either every write in it lands or none does, and
``keys.get(..., for_update=True)`` serializes concurrent transactions
touching the same key.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class DeviceRecord:
    device_id: str
    trial_started_at: datetime
    app_version: str
    last_heartbeat_at: datetime
    created_at: datetime
    heartbeat_count_today: int = 0
    heartbeat_date_bucket: str = ""
    registered_key_hash: str | None = None
    key_hint: str | None = None


@dataclass
class KeyRecord:
    key_hash: str
    created_at: datetime
    validated_at: datetime
    devices: set[str] = field(default_factory=set)
    max_devices: int = 3
    valid: bool = True


@dataclass
class PolicyRecord:
    latest_version: str = "0.1.0"
    trial_days: int = 30
    token_expiry_days: int = 30
    server_message: str | None = None
    force_update_below_version: str | None = None


# ---------------------------------------------------------------------------
# Store protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class DeviceStore(Protocol):
    """Per-device records, keyed by device identifier."""

    async def get(self, device_id: str) -> DeviceRecord | None: ...
    async def create(self, record: DeviceRecord) -> None: ...
    async def update(self, record: DeviceRecord) -> None: ...
    async def delete(self, device_id: str) -> bool: ...
    async def list(self) -> list[DeviceRecord]: ...


@runtime_checkable
class KeyStore(Protocol):
    """Registration key records, keyed by key hash."""

    async def get(self, key_hash: str, *, for_update: bool = False) -> KeyRecord | None: ...
    async def create(self, record: KeyRecord) -> None: ...
    async def add_device(self, key_hash: str, device_id: str) -> None: ...
    async def remove_devices(self, key_hash: str, device_ids: set[str]) -> int: ...
    async def set_max_devices(self, key_hash: str, max_devices: int) -> bool: ...
    async def delete(self, key_hash: str) -> bool: ...
    async def list(self) -> list[KeyRecord]: ...


@runtime_checkable
class PolicyStore(Protocol):
    """The singleton policy record."""

    async def get(self) -> PolicyRecord | None: ...
    async def save(self, record: PolicyRecord) -> None: ...


class StoreTransaction(Protocol):
    devices: DeviceStore
    keys: KeyStore
    policy: PolicyStore


@runtime_checkable
class LicenseStore(Protocol):
    """Entry point for all server-side storage."""

    async def init(self, database_url: str) -> None: ...
    async def close(self) -> None: ...
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]: ...


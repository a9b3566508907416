"""SQLAlchemy implementation of the license store protocols."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from trialgate.storage import database
from trialgate.storage.models import Device, KeyDevice, PolicyConfig, RegistrationKey, utcnow
from trialgate.storage.repositories import DeviceRecord, KeyRecord, PolicyRecord

_POLICY_ID = "current"


def _device_record(row: Device) -> DeviceRecord:
    return DeviceRecord(
        device_id=row.device_id,
        trial_started_at=row.trial_started_at,
        app_version=row.app_version,
        last_heartbeat_at=row.last_heartbeat_at,
        created_at=row.created_at,
        heartbeat_count_today=row.heartbeat_count_today,
        heartbeat_date_bucket=row.heartbeat_date_bucket,
        registered_key_hash=row.registered_key_hash,
        key_hint=row.key_hint,
    )


class SQLDeviceStore:
    """DeviceStore bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, device_id: str) -> DeviceRecord | None:
        row = await self._session.get(Device, device_id)
        return _device_record(row) if row else None

    async def create(self, record: DeviceRecord) -> None:
        self._session.add(Device(
            device_id=record.device_id,
            trial_started_at=record.trial_started_at,
            registered_key_hash=record.registered_key_hash,
            key_hint=record.key_hint,
            app_version=record.app_version,
            last_heartbeat_at=record.last_heartbeat_at,
            heartbeat_count_today=record.heartbeat_count_today,
            heartbeat_date_bucket=record.heartbeat_date_bucket,
            created_at=record.created_at,
        ))
        await self._session.flush()

    async def update(self, record: DeviceRecord) -> None:
        row = await self._session.get(Device, record.device_id)
        if row is None:
            raise LookupError(f"Device not found: {record.device_id}")
        row.trial_started_at = record.trial_started_at
        row.registered_key_hash = record.registered_key_hash
        row.key_hint = record.key_hint
        row.app_version = record.app_version
        row.last_heartbeat_at = record.last_heartbeat_at
        row.heartbeat_count_today = record.heartbeat_count_today
        row.heartbeat_date_bucket = record.heartbeat_date_bucket
        await self._session.flush()

    async def delete(self, device_id: str) -> bool:
        result = await self._session.execute(
            delete(Device).where(Device.device_id == device_id)
        )
        return result.rowcount > 0

    async def list(self) -> list[DeviceRecord]:
        result = await self._session.execute(select(Device).order_by(Device.created_at))
        return [_device_record(row) for row in result.scalars().all()]


class SQLKeyStore:
    """KeyStore bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _members(self, key_hash: str) -> set[str]:
        result = await self._session.execute(
            select(KeyDevice.device_id).where(KeyDevice.key_hash == key_hash)
        )
        return set(result.scalars().all())

    async def get(self, key_hash: str, *, for_update: bool = False) -> KeyRecord | None:
        stmt = select(RegistrationKey).where(RegistrationKey.key_hash == key_hash)
        if for_update:
            # Row lock on PostgreSQL; SQLite already holds the database write lock
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return KeyRecord(
            key_hash=row.key_hash,
            created_at=row.created_at,
            validated_at=row.validated_at,
            devices=await self._members(key_hash),
            max_devices=row.max_devices,
            valid=row.valid,
        )

    async def create(self, record: KeyRecord) -> None:
        self._session.add(RegistrationKey(
            key_hash=record.key_hash,
            max_devices=record.max_devices,
            valid=record.valid,
            created_at=record.created_at,
            validated_at=record.validated_at,
        ))
        await self._session.flush()
        for device_id in sorted(record.devices):
            self._session.add(KeyDevice(key_hash=record.key_hash, device_id=device_id))
        await self._session.flush()

    async def add_device(self, key_hash: str, device_id: str) -> None:
        existing = await self._session.get(KeyDevice, (key_hash, device_id))
        if existing is None:
            self._session.add(KeyDevice(key_hash=key_hash, device_id=device_id))
            await self._session.flush()

    async def remove_devices(self, key_hash: str, device_ids: set[str]) -> int:
        if not device_ids:
            return 0
        result = await self._session.execute(
            delete(KeyDevice).where(
                KeyDevice.key_hash == key_hash,
                KeyDevice.device_id.in_(device_ids),
            )
        )
        return result.rowcount

    async def set_max_devices(self, key_hash: str, max_devices: int) -> bool:
        row = await self._session.get(RegistrationKey, key_hash)
        if row is None:
            return False
        row.max_devices = max_devices
        await self._session.flush()
        return True

    async def delete(self, key_hash: str) -> bool:
        await self._session.execute(delete(KeyDevice).where(KeyDevice.key_hash == key_hash))
        result = await self._session.execute(
            delete(RegistrationKey).where(RegistrationKey.key_hash == key_hash)
        )
        return result.rowcount > 0

    async def list(self) -> list[KeyRecord]:
        result = await self._session.execute(
            select(RegistrationKey).order_by(RegistrationKey.created_at)
        )
        rows = result.scalars().all()
        return [
            KeyRecord(
                key_hash=row.key_hash,
                created_at=row.created_at,
                validated_at=row.validated_at,
                devices=await self._members(row.key_hash),
                max_devices=row.max_devices,
                valid=row.valid,
            )
            for row in rows
        ]


class SQLPolicyStore:
    """PolicyStore bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self) -> PolicyRecord | None:
        row = await self._session.get(PolicyConfig, _POLICY_ID)
        if row is None:
            return None
        return PolicyRecord(
            latest_version=row.latest_version,
            trial_days=row.trial_days,
            token_expiry_days=row.token_expiry_days,
            server_message=row.server_message,
            force_update_below_version=row.force_update_below_version,
        )

    async def save(self, record: PolicyRecord) -> None:
        row = await self._session.get(PolicyConfig, _POLICY_ID)
        if row is None:
            row = PolicyConfig(id=_POLICY_ID)
            self._session.add(row)
        row.latest_version = record.latest_version
        row.trial_days = record.trial_days
        row.token_expiry_days = record.token_expiry_days
        row.server_message = record.server_message
        row.force_update_below_version = record.force_update_below_version
        row.updated_at = utcnow()
        await self._session.flush()


class SQLTransaction:
    """The three stores sharing one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.devices = SQLDeviceStore(session)
        self.keys = SQLKeyStore(session)
        self.policy = SQLPolicyStore(session)


class SQLLicenseStore:
    """LicenseStore backed by SQLAlchemy (SQLite by default)."""

    async def init(self, database_url: str) -> None:
        await database.init_db(database_url)

    async def close(self) -> None:
        await database.close_db()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLTransaction]:
        async with database.transaction() as session:
            yield SQLTransaction(session)

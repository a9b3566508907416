"""Binding devices to registration keys with per-key device quotas."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from trialgate.errors import DeviceLimitError, DeviceNotFoundError, ValidationError
from trialgate.licensing.token import TokenPayload
from trialgate.server.download_keys import build_key_hint, hash_download_key
from trialgate.server.policy import load_policy
from trialgate.storage.models import utcnow
from trialgate.storage.repositories import KeyRecord

if TYPE_CHECKING:
    from trialgate.config import LimitsConfig, PolicyConfig
    from trialgate.licensing.token import TokenCodec
    from trialgate.storage.repositories import LicenseStore, StoreTransaction

logger = logging.getLogger("trialgate.server.registration")


@dataclass
class RegistrationResult:
    success: bool
    token: str | None = None
    key_hint: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.token:
            data["jwt"] = self.token
        if self.key_hint:
            data["keyHint"] = self.key_hint
        if self.error:
            data["error"] = self.error
        return data


class RegistrationService:
    """Binds a device to a download key and issues its first token.

    The whole read-evict-check-write sequence runs in one store
    transaction with the key row locked, so two devices racing for the
    last free slot of a key cannot both be admitted. A rejected
    registration rolls back and leaves no trace.
    """

    def __init__(
        self,
        store: LicenseStore,
        codec: TokenCodec,
        limits: LimitsConfig,
        policy_defaults: PolicyConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._limits = limits
        self._policy_defaults = policy_defaults
        self._clock = clock

    async def register(self, device_id: str | None, download_key: str | None) -> RegistrationResult:
        if not device_id or not download_key:
            raise ValidationError("deviceId and downloadKey are required")

        key_hash = hash_download_key(download_key)
        key_hint = build_key_hint(download_key)
        now = self._clock()

        async with self._store.transaction() as tx:
            device = await tx.devices.get(device_id)
            if device is None:
                raise DeviceNotFoundError(device_id)

            old_key_hash = device.registered_key_hash
            if old_key_hash and old_key_hash != key_hash:
                removed = await tx.keys.remove_devices(old_key_hash, {device_id})
                if removed:
                    logger.info("Device %s left key %s...", device_id, old_key_hash[:8])

            key = await tx.keys.get(key_hash, for_update=True)
            if key is None:
                await tx.keys.create(KeyRecord(
                    key_hash=key_hash,
                    created_at=now,
                    validated_at=now,
                    devices={device_id},
                    max_devices=self._limits.default_max_devices,
                ))
                logger.info("New key %s registered by device %s", key_hint, device_id)
            elif device_id in key.devices:
                logger.info("Device %s re-registered key %s", device_id, key_hint)
            else:
                await self._admit(tx, key, device_id, now)
                logger.info(
                    "Device %s added to key %s (%d/%d)",
                    device_id,
                    key_hint,
                    len(key.devices) + 1,
                    key.max_devices,
                )

            device.registered_key_hash = key_hash
            device.key_hint = key_hint
            await tx.devices.update(device)
            policy = await load_policy(tx.policy, self._policy_defaults)

        payload = TokenPayload.issue(device_id, key_hint, policy.token_expiry_days, now)
        return RegistrationResult(success=True, token=self._codec.sign(payload), key_hint=key_hint)

    async def _admit(
        self,
        tx: StoreTransaction,
        key: KeyRecord,
        device_id: str,
        now: datetime,
    ) -> None:
        """Evict stale members, then add *device_id* if a slot is free."""
        stale = await self._stale_members(tx, key.devices, now)
        if stale:
            await tx.keys.remove_devices(key.key_hash, stale)
            key.devices -= stale
            logger.info("Evicted %d stale device(s) from key %s...", len(stale), key.key_hash[:8])

        if len(key.devices) >= key.max_devices:
            logger.warning(
                "Device limit reached for key %s... (%d/%d), rejecting %s",
                key.key_hash[:8],
                len(key.devices),
                key.max_devices,
                device_id,
            )
            raise DeviceLimitError(key.max_devices)

        await tx.keys.add_device(key.key_hash, device_id)

    async def _stale_members(
        self,
        tx: StoreTransaction,
        members: set[str],
        now: datetime,
    ) -> set[str]:
        cutoff = now - timedelta(days=self._limits.stale_device_days)
        stale: set[str] = set()
        for member_id in members:
            member = await tx.devices.get(member_id)
            if member is None or member.last_heartbeat_at < cutoff:
                stale.add(member_id)
        return stale

"""Per-device heartbeat: trial tracking, token renewal and version status."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from trialgate.errors import RateLimitExceededError, ValidationError
from trialgate.licensing.token import TokenPayload
from trialgate.server.download_keys import build_key_hint, hash_download_key
from trialgate.server.policy import load_policy
from trialgate.server.versions import is_newer
from trialgate.storage.models import utcnow
from trialgate.storage.repositories import DeviceRecord

if TYPE_CHECKING:
    from trialgate.config import LimitsConfig, PolicyConfig
    from trialgate.licensing.token import TokenCodec
    from trialgate.storage.repositories import LicenseStore, PolicyRecord, StoreTransaction

logger = logging.getLogger("trialgate.server.heartbeat")

_DAY_SECONDS = 86400


@dataclass
class HeartbeatResult:
    """Status returned to a device after a heartbeat."""

    registered: bool
    trial_valid: bool
    trial_days_remaining: int
    latest_version: str
    update_available: bool
    force_update: bool = False
    token: str | None = None
    server_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "registered": self.registered,
            "trialValid": self.trial_valid,
            "trialDaysRemaining": self.trial_days_remaining,
            "latestVersion": self.latest_version,
            "updateAvailable": self.update_available,
            "forceUpdate": self.force_update,
            "serverMessage": self.server_message,
        }
        if self.token:
            data["jwt"] = self.token
        return data


class HeartbeatService:
    """Resolves a device's trial/registration status on each check-in.

    Unknown devices get a device record and a fresh trial clock. Known
    devices are rate limited per UTC day; bound devices get a freshly
    signed token every time, which is what keeps the client's offline
    fast path alive.
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

    async def heartbeat(
        self,
        device_id: str | None,
        app_version: str | None,
        download_key: str | None = None,
    ) -> HeartbeatResult:
        if not device_id or not app_version:
            raise ValidationError("deviceId and appVersion are required")

        now = self._clock()
        today = now.date().isoformat()

        async with self._store.transaction() as tx:
            policy = await load_policy(tx.policy, self._policy_defaults)
            device = await tx.devices.get(device_id)

            if device is None:
                await tx.devices.create(DeviceRecord(
                    device_id=device_id,
                    trial_started_at=now,
                    app_version=app_version,
                    last_heartbeat_at=now,
                    created_at=now,
                    heartbeat_count_today=1,
                    heartbeat_date_bucket=today,
                ))
                logger.info("New device %s started a %d-day trial", device_id, policy.trial_days)
                return self._result(
                    policy,
                    app_version,
                    registered=False,
                    trial_valid=True,
                    trial_days_remaining=policy.trial_days,
                )

            if device.heartbeat_date_bucket == today:
                if device.heartbeat_count_today >= self._limits.heartbeats_per_day:
                    logger.warning("Heartbeat rate limit hit for device %s", device_id)
                    raise RateLimitExceededError(device_id, self._limits.heartbeats_per_day)
                device.heartbeat_count_today += 1
            else:
                device.heartbeat_count_today = 1
                device.heartbeat_date_bucket = today

            device.app_version = app_version
            device.last_heartbeat_at = now

            if not device.registered_key_hash and download_key:
                await self._restore_binding(tx, device, download_key)

            await tx.devices.update(device)

        if device.registered_key_hash:
            payload = TokenPayload.issue(
                device_id,
                device.key_hint or "****",
                policy.token_expiry_days,
                now,
            )
            return self._result(
                policy,
                app_version,
                registered=True,
                trial_valid=False,
                trial_days_remaining=0,
                token=self._codec.sign(payload),
            )

        trial_end = device.trial_started_at + timedelta(days=policy.trial_days)
        if now < trial_end:
            remaining = math.ceil((trial_end - now).total_seconds() / _DAY_SECONDS)
            return self._result(
                policy,
                app_version,
                registered=False,
                trial_valid=True,
                trial_days_remaining=remaining,
            )

        return self._result(
            policy,
            app_version,
            registered=False,
            trial_valid=False,
            trial_days_remaining=0,
        )

    async def _restore_binding(
        self,
        tx: StoreTransaction,
        device: DeviceRecord,
        download_key: str,
    ) -> None:
        """Re-bind a device that resent a key it is still a member of."""
        key_hash = hash_download_key(download_key)
        key = await tx.keys.get(key_hash)
        if key is None or device.device_id not in key.devices:
            return
        device.registered_key_hash = key_hash
        device.key_hint = build_key_hint(download_key)
        logger.info("Restored key binding for device %s (%s)", device.device_id, device.key_hint)

    @staticmethod
    def _result(
        policy: PolicyRecord,
        app_version: str,
        *,
        registered: bool,
        trial_valid: bool,
        trial_days_remaining: int,
        token: str | None = None,
    ) -> HeartbeatResult:
        force_update = bool(
            policy.force_update_below_version
            and is_newer(policy.force_update_below_version, app_version)
        )
        return HeartbeatResult(
            registered=registered,
            trial_valid=trial_valid,
            trial_days_remaining=trial_days_remaining,
            latest_version=policy.latest_version,
            update_available=is_newer(policy.latest_version, app_version),
            force_update=force_update,
            token=token,
            server_message=policy.server_message,
        )

"""Tests for device registration and per-key device quotas."""

from __future__ import annotations

import asyncio

import pytest

from trialgate.config import LimitsConfig
from trialgate.errors import DeviceLimitError, DeviceNotFoundError, ValidationError
from trialgate.server.download_keys import hash_download_key
from trialgate.server.heartbeat import HeartbeatService
from trialgate.server.registration import RegistrationService

KEY = "ABCD-1234-EFGH"
OTHER_KEY = "WXYZ-9876-STUV"


@pytest.fixture
def heartbeat(store, codec, limits, policy, clock):
    return HeartbeatService(store, codec, limits, policy, clock=clock)


@pytest.fixture
def service(store, codec, limits, policy, clock):
    return RegistrationService(store, codec, limits, policy, clock=clock)


async def _snapshot(store):
    async with store.transaction() as tx:
        devices = {d.device_id: d for d in await tx.devices.list()}
        keys = {k.key_hash: k for k in await tx.keys.list()}
    return devices, keys


async def _key(store, download_key=KEY):
    async with store.transaction() as tx:
        return await tx.keys.get(hash_download_key(download_key))


async def _device(store, device_id):
    async with store.transaction() as tx:
        return await tx.devices.get(device_id)


class TestRegister:
    @pytest.mark.asyncio
    async def test_unknown_device_rejected(self, service, store):
        with pytest.raises(DeviceNotFoundError) as exc_info:
            await service.register("never-seen", KEY)
        assert str(exc_info.value) == "Device not found. Please launch the app first."
        assert await _key(store) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("device_id", "download_key"), [(None, KEY), ("dev-1", None), ("", KEY)])
    async def test_missing_fields(self, service, device_id, download_key):
        with pytest.raises(ValidationError):
            await service.register(device_id, download_key)

    @pytest.mark.asyncio
    async def test_new_key_is_created(self, heartbeat, service, store, client_codec, clock):
        await heartbeat.heartbeat("dev-1", "1.0.0")

        result = await service.register("dev-1", KEY)

        assert result.success is True
        assert result.key_hint == "ABCD****EFGH"
        payload = client_codec.verify(result.token)
        assert payload.device_id == "dev-1"
        assert payload.key_hint == "ABCD****EFGH"

        key = await _key(store)
        assert key.devices == {"dev-1"}
        assert key.max_devices == 3
        assert key.valid is True
        assert key.created_at == clock.now

        device = await _device(store, "dev-1")
        assert device.registered_key_hash == hash_download_key(KEY)
        assert device.key_hint == "ABCD****EFGH"

    @pytest.mark.asyncio
    async def test_plaintext_key_never_stored(self, heartbeat, service, store):
        await heartbeat.heartbeat("dev-1", "1.0.0")
        await service.register("dev-1", KEY)
        devices, keys = await _snapshot(store)
        assert KEY not in keys
        assert all(d.registered_key_hash != KEY for d in devices.values())

    @pytest.mark.asyncio
    async def test_wire_shape(self, heartbeat, service):
        await heartbeat.heartbeat("dev-1", "1.0.0")
        data = (await service.register("dev-1", KEY)).to_dict()
        assert data["success"] is True
        assert data["keyHint"] == "ABCD****EFGH"
        assert data["jwt"].count(".") == 2
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_default_max_devices_from_limits(self, heartbeat, store, codec, policy, clock):
        service = RegistrationService(store, codec, LimitsConfig(default_max_devices=5), policy, clock=clock)
        await heartbeat.heartbeat("dev-1", "1.0.0")
        await service.register("dev-1", KEY)
        assert (await _key(store)).max_devices == 5


class TestReRegistration:
    @pytest.mark.asyncio
    async def test_same_key_is_idempotent(self, heartbeat, service, store, client_codec, clock):
        await heartbeat.heartbeat("dev-1", "1.0.0")
        first = await service.register("dev-1", KEY)
        clock.advance(hours=1)

        second = await service.register("dev-1", KEY)

        assert second.success is True
        assert second.token != first.token
        assert client_codec.verify(second.token).issued_at > client_codec.verify(first.token).issued_at
        assert (await _key(store)).devices == {"dev-1"}

    @pytest.mark.asyncio
    async def test_member_can_reregister_on_full_key(self, heartbeat, service, store):
        for device_id in ("dev-1", "dev-2", "dev-3"):
            await heartbeat.heartbeat(device_id, "1.0.0")
            await service.register(device_id, KEY)

        result = await service.register("dev-2", KEY)
        assert result.success is True
        assert len((await _key(store)).devices) == 3

    @pytest.mark.asyncio
    async def test_switching_keys_frees_old_slot(self, heartbeat, service, store):
        await heartbeat.heartbeat("dev-1", "1.0.0")
        await service.register("dev-1", KEY)

        result = await service.register("dev-1", OTHER_KEY)

        assert result.key_hint == "WXYZ****STUV"
        assert (await _key(store, KEY)).devices == set()
        assert (await _key(store, OTHER_KEY)).devices == {"dev-1"}
        device = await _device(store, "dev-1")
        assert device.registered_key_hash == hash_download_key(OTHER_KEY)
        assert device.key_hint == "WXYZ****STUV"


class TestDeviceLimit:
    async def _fill(self, heartbeat, service, count=3):
        for i in range(count):
            await heartbeat.heartbeat(f"dev-{i}", "1.0.0")
            await service.register(f"dev-{i}", KEY)

    @pytest.mark.asyncio
    async def test_fourth_device_rejected_without_mutation(self, heartbeat, service, store):
        await self._fill(heartbeat, service)
        await heartbeat.heartbeat("dev-new", "1.0.0")
        before = await _snapshot(store)

        with pytest.raises(DeviceLimitError) as exc_info:
            await service.register("dev-new", KEY)

        assert str(exc_info.value) == "Device limit reached (3 devices). Please contact support."
        assert exc_info.value.max_devices == 3
        assert await _snapshot(store) == before

    @pytest.mark.asyncio
    async def test_rejected_key_switch_keeps_old_membership(self, heartbeat, service, store):
        await self._fill(heartbeat, service)
        await heartbeat.heartbeat("mover", "1.0.0")
        await service.register("mover", OTHER_KEY)

        with pytest.raises(DeviceLimitError):
            await service.register("mover", KEY)

        assert (await _key(store, OTHER_KEY)).devices == {"mover"}
        assert (await _device(store, "mover")).registered_key_hash == hash_download_key(OTHER_KEY)

    @pytest.mark.asyncio
    async def test_stale_member_is_evicted(self, heartbeat, service, store, clock):
        await heartbeat.heartbeat("old", "1.0.0")
        await service.register("old", KEY)
        clock.advance(days=91)
        for device_id in ("dev-1", "dev-2", "dev-new"):
            await heartbeat.heartbeat(device_id, "1.0.0")
        await service.register("dev-1", KEY)
        await service.register("dev-2", KEY)

        result = await service.register("dev-new", KEY)

        assert result.success is True
        assert (await _key(store)).devices == {"dev-1", "dev-2", "dev-new"}

    @pytest.mark.asyncio
    async def test_recent_member_is_not_evicted(self, heartbeat, service, clock):
        await self._fill(heartbeat, service)
        clock.advance(days=89)
        await heartbeat.heartbeat("dev-new", "1.0.0")

        with pytest.raises(DeviceLimitError):
            await service.register("dev-new", KEY)

    @pytest.mark.asyncio
    async def test_member_without_device_record_is_evicted(self, heartbeat, service, store):
        await self._fill(heartbeat, service)
        async with store.transaction() as tx:
            await tx.devices.delete("dev-0")
        await heartbeat.heartbeat("dev-new", "1.0.0")

        result = await service.register("dev-new", KEY)

        assert result.success is True
        assert (await _key(store)).devices == {"dev-1", "dev-2", "dev-new"}

    @pytest.mark.asyncio
    async def test_raised_limit_admits_more(self, heartbeat, service, store):
        await self._fill(heartbeat, service)
        async with store.transaction() as tx:
            await tx.keys.set_max_devices(hash_download_key(KEY), 4)
        await heartbeat.heartbeat("dev-new", "1.0.0")

        assert (await service.register("dev-new", KEY)).success is True


class TestConcurrentRegistration:
    @pytest.mark.asyncio
    async def test_last_slot_goes_to_exactly_one_device(self, heartbeat, service, store):
        await heartbeat.heartbeat("dev-0", "1.0.0")
        await heartbeat.heartbeat("dev-1", "1.0.0")
        await service.register("dev-0", KEY)
        await service.register("dev-1", KEY)
        contenders = [f"racer-{i}" for i in range(4)]
        for device_id in contenders:
            await heartbeat.heartbeat(device_id, "1.0.0")

        results = await asyncio.gather(
            *(service.register(device_id, KEY) for device_id in contenders),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, DeviceLimitError)]
        assert len(admitted) == 1
        assert len(rejected) == 3
        key = await _key(store)
        assert len(key.devices) == 3
        assert {"dev-0", "dev-1"} <= key.devices

    @pytest.mark.asyncio
    async def test_fresh_key_race_never_exceeds_quota(self, heartbeat, service, store):
        contenders = [f"racer-{i}" for i in range(5)]
        for device_id in contenders:
            await heartbeat.heartbeat(device_id, "1.0.0")

        results = await asyncio.gather(
            *(service.register(device_id, KEY) for device_id in contenders),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, BaseException)]
        assert len(admitted) == 3
        assert all(isinstance(r, DeviceLimitError) for r in results if isinstance(r, BaseException))
        assert len((await _key(store)).devices) == 3

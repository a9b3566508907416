"""Tests for the desktop-side credential store, connectivity probe and server client."""

from __future__ import annotations

import json

import httpx
import pytest

from trialgate.client.api import HeartbeatResponse, LicenseServerClient
from trialgate.client.connectivity import ConnectivityProbe, HttpConnectivityProbe
from trialgate.client.credentials import CredentialStore, JsonCredentialStore
from trialgate.errors import RateLimitedError, RegistrationFailedError, ServerUnavailableError

HEARTBEAT_BODY = {
    "registered": False,
    "trialValid": True,
    "trialDaysRemaining": 12,
    "latestVersion": "1.2.0",
    "updateAvailable": True,
    "forceUpdate": False,
    "serverMessage": "Hello",
}


def _transport(status: int = 200, body: object = None, *, content: bytes | None = None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if content is not None:
            return httpx.Response(status, content=content)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


def _failing_transport(exc: Exception):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return httpx.MockTransport(handler)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestJsonCredentialStore:
    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(JsonCredentialStore(tmp_path / "c.json"), CredentialStore)

    def test_generates_and_persists_device_id(self, tmp_path):
        path = tmp_path / "sub" / "credential.json"
        first = JsonCredentialStore(path).load()

        assert first.device_id
        assert first.token is None
        assert first.download_key is None
        assert json.loads(path.read_text())["deviceId"] == first.device_id
        assert JsonCredentialStore(path).load().device_id == first.device_id

    def test_partial_saves(self, tmp_path):
        store = JsonCredentialStore(tmp_path / "c.json")
        device_id = store.load().device_id

        store.save(token="a.b.c")
        store.save(download_key="KEY-1")
        loaded = store.load()

        assert loaded.device_id == device_id
        assert loaded.token == "a.b.c"
        assert loaded.download_key == "KEY-1"

        store.save(token=None)
        loaded = store.load()
        assert loaded.token is None
        assert loaded.download_key == "KEY-1"

    def test_corrupt_file_is_set_aside(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("{broken")

        loaded = JsonCredentialStore(path).load()

        assert loaded.device_id
        assert (tmp_path / "c.json.corrupt").read_text() == "{broken"
        assert json.loads(path.read_text())["deviceId"] == loaded.device_id

    def test_non_object_file_is_ignored(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("[1, 2, 3]")
        assert JsonCredentialStore(path).load().device_id


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class TestHttpConnectivityProbe:
    def test_satisfies_protocol(self):
        assert isinstance(HttpConnectivityProbe(), ConnectivityProbe)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "online"), [(204, True), (200, True), (404, True), (503, False)])
    async def test_status_codes(self, status, online):
        probe = HttpConnectivityProbe("http://probe.test/", transport=_transport(status, {}))
        assert await probe.is_online() is online

    @pytest.mark.asyncio
    async def test_network_error_is_offline(self):
        probe = HttpConnectivityProbe(
            "http://probe.test/",
            transport=_failing_transport(httpx.ConnectError("no route")),
        )
        assert await probe.is_online() is False

    @pytest.mark.asyncio
    async def test_timeout_is_offline(self):
        probe = HttpConnectivityProbe(
            "http://probe.test/",
            transport=_failing_transport(httpx.ReadTimeout("slow")),
        )
        assert await probe.is_online() is False


# ---------------------------------------------------------------------------
# LicenseServerClient
# ---------------------------------------------------------------------------


class TestHeartbeatCall:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen: list[httpx.Request] = []
        client = LicenseServerClient("http://server.test/", transport=_transport(200, HEARTBEAT_BODY, seen=seen))

        await client.heartbeat("dev-1", "1.0.0", "KEY-1")

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/heartbeat"
        assert json.loads(seen[0].content) == {
            "deviceId": "dev-1",
            "appVersion": "1.0.0",
            "downloadKey": "KEY-1",
        }

    @pytest.mark.asyncio
    async def test_download_key_omitted_when_absent(self):
        seen: list[httpx.Request] = []
        client = LicenseServerClient("http://server.test", transport=_transport(200, HEARTBEAT_BODY, seen=seen))
        await client.heartbeat("dev-1", "1.0.0")
        assert "downloadKey" not in json.loads(seen[0].content)

    @pytest.mark.asyncio
    async def test_parses_response(self):
        client = LicenseServerClient("http://server.test", transport=_transport(200, HEARTBEAT_BODY))
        response = await client.heartbeat("dev-1", "1.0.0")
        assert response == HeartbeatResponse(
            registered=False,
            trial_valid=True,
            trial_days_remaining=12,
            latest_version="1.2.0",
            update_available=True,
            force_update=False,
            token=None,
            server_message="Hello",
        )

    @pytest.mark.asyncio
    async def test_jwt_maps_to_token(self):
        body = {**HEARTBEAT_BODY, "registered": True, "trialValid": False, "jwt": "a.b.c"}
        client = LicenseServerClient("http://server.test", transport=_transport(200, body))
        assert (await client.heartbeat("dev-1", "1.0.0")).token == "a.b.c"

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self):
        client = LicenseServerClient(
            "http://server.test",
            transport=_transport(429, {"error": "Rate limit exceeded. Try again tomorrow."}),
        )
        with pytest.raises(RateLimitedError, match="Try again tomorrow"):
            await client.heartbeat("dev-1", "1.0.0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 500, 502])
    async def test_other_errors_are_unavailable(self, status):
        client = LicenseServerClient("http://server.test", transport=_transport(status, {"error": "x"}))
        with pytest.raises(ServerUnavailableError):
            await client.heartbeat("dev-1", "1.0.0")

    @pytest.mark.asyncio
    async def test_non_json_is_unavailable(self):
        client = LicenseServerClient("http://server.test", transport=_transport(200, content=b"<html>"))
        with pytest.raises(ServerUnavailableError):
            await client.heartbeat("dev-1", "1.0.0")

    @pytest.mark.asyncio
    async def test_missing_fields_are_unavailable(self):
        client = LicenseServerClient("http://server.test", transport=_transport(200, {"registered": True}))
        with pytest.raises(ServerUnavailableError):
            await client.heartbeat("dev-1", "1.0.0")

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self):
        client = LicenseServerClient(
            "http://server.test",
            transport=_failing_transport(httpx.ConnectError("refused")),
        )
        with pytest.raises(ServerUnavailableError):
            await client.heartbeat("dev-1", "1.0.0")


class TestRegisterCall:
    @pytest.mark.asyncio
    async def test_success(self):
        seen: list[httpx.Request] = []
        client = LicenseServerClient(
            "http://server.test",
            transport=_transport(200, {"success": True, "jwt": "a.b.c", "keyHint": "ABCD****EFGH"}, seen=seen),
        )

        response = await client.register("dev-1", "ABCD-1234-EFGH")

        assert response.success is True
        assert response.token == "a.b.c"
        assert response.key_hint == "ABCD****EFGH"
        assert seen[0].url.path == "/register"
        assert json.loads(seen[0].content) == {"deviceId": "dev-1", "downloadKey": "ABCD-1234-EFGH"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403])
    async def test_rejection_carries_server_message(self, status):
        client = LicenseServerClient(
            "http://server.test",
            transport=_transport(status, {"success": False, "error": "Device limit reached (3 devices). Please contact support."}),
        )
        with pytest.raises(RegistrationFailedError) as exc_info:
            await client.register("dev-1", "KEY")
        assert exc_info.value.status_code == status
        assert "Device limit reached" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_success_false_with_200(self):
        client = LicenseServerClient("http://server.test", transport=_transport(200, {"success": False}))
        with pytest.raises(RegistrationFailedError):
            await client.register("dev-1", "KEY")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        client = LicenseServerClient("http://server.test", transport=_transport(503, {}))
        with pytest.raises(ServerUnavailableError):
            await client.register("dev-1", "KEY")

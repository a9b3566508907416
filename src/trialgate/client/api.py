"""HTTP client for the license server endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from trialgate.errors import RateLimitedError, RegistrationFailedError, ServerUnavailableError

logger = logging.getLogger("trialgate.client.api")


@dataclass(frozen=True)
class HeartbeatResponse:
    registered: bool
    trial_valid: bool
    trial_days_remaining: int
    latest_version: str
    update_available: bool
    force_update: bool = False
    token: str | None = None
    server_message: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeartbeatResponse:
        return cls(
            registered=bool(data["registered"]),
            trial_valid=bool(data["trialValid"]),
            trial_days_remaining=int(data.get("trialDaysRemaining") or 0),
            latest_version=str(data.get("latestVersion") or ""),
            update_available=bool(data.get("updateAvailable", False)),
            force_update=bool(data.get("forceUpdate", False)),
            token=data.get("jwt") or None,
            server_message=data.get("serverMessage") or None,
        )


@dataclass(frozen=True)
class RegisterResponse:
    success: bool
    token: str | None = None
    key_hint: str | None = None
    error: str | None = None


class LicenseServerClient:
    """Wraps httpx for the two license endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self._base,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                return await client.post(path, json=body)
        except httpx.HTTPError as exc:
            raise ServerUnavailableError(f"License server unreachable: {exc}") from exc

    async def heartbeat(
        self,
        device_id: str,
        app_version: str,
        download_key: str | None = None,
    ) -> HeartbeatResponse:
        body: dict[str, Any] = {"deviceId": device_id, "appVersion": app_version}
        if download_key:
            body["downloadKey"] = download_key
        resp = await self._post("/heartbeat", body)

        if resp.status_code == 429:
            raise RateLimitedError(_error_message(resp, "Rate limit exceeded"))
        if resp.status_code != 200:
            raise ServerUnavailableError(
                f"Heartbeat failed with HTTP {resp.status_code}: {_error_message(resp, '')}"
            )
        try:
            return HeartbeatResponse.from_dict(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise ServerUnavailableError(f"Malformed heartbeat response: {exc}") from exc

    async def register(self, device_id: str, download_key: str) -> RegisterResponse:
        resp = await self._post("/register", {"deviceId": device_id, "downloadKey": download_key})
        if resp.status_code >= 500:
            raise ServerUnavailableError(f"Registration failed with HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ServerUnavailableError(f"Malformed registration response: {exc}") from exc

        if resp.status_code != 200 or not data.get("success"):
            raise RegistrationFailedError(
                data.get("error") or f"Registration failed (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )
        return RegisterResponse(
            success=True,
            token=data.get("jwt") or None,
            key_hint=data.get("keyHint") or None,
        )


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return default

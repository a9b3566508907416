"""Reachability checks used to choose between heartbeat and offline fallback."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger("trialgate.client.connectivity")

DEFAULT_PROBE_URL = "https://www.google.com/generate_204"


@runtime_checkable
class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool: ...


class HttpConnectivityProbe:
    """Cheap GET against a well-known endpoint. Any non-5xx answer counts as online."""

    def __init__(
        self,
        url: str = DEFAULT_PROBE_URL,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def is_online(self) -> bool:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                resp = await client.get(self._url)
        except httpx.HTTPError as exc:
            logger.info("Connectivity probe failed: %s", exc)
            return False
        return resp.status_code < 500

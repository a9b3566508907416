"""Desktop-side license resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .api import HeartbeatResponse, LicenseServerClient, RegisterResponse
from .connectivity import ConnectivityProbe, HttpConnectivityProbe
from .credentials import CredentialStore, JsonCredentialStore, StoredCredential
from .resolver import (
    BaseResolver,
    FixedModeResolver,
    LicenseResolver,
    LicenseState,
    RegistrationOutcome,
)

if TYPE_CHECKING:
    from trialgate.config import Settings


def create_resolver(
    settings: Settings,
    credentials: CredentialStore | None = None,
    connectivity: ConnectivityProbe | None = None,
) -> BaseResolver:
    """Build the resolver described by ``settings.client``.

    A configured ``mode_override`` yields a :class:`FixedModeResolver`
    instead of talking to the license server.
    """
    from trialgate.licensing.token import TokenCodec

    client = settings.client
    if client.mode_override:
        return FixedModeResolver(client.mode_override)

    return LicenseResolver(
        credentials or JsonCredentialStore(client.credential_path),
        TokenCodec.for_client(settings.signing),
        LicenseServerClient(client.server_url, timeout=client.heartbeat_timeout),
        connectivity or HttpConnectivityProbe(client.probe_url, timeout=client.probe_timeout),
        client.app_version,
        freshness_hours=client.freshness_hours,
        probe_timeout=client.probe_timeout,
        heartbeat_timeout=client.heartbeat_timeout,
    )


__all__ = [
    "BaseResolver",
    "ConnectivityProbe",
    "CredentialStore",
    "FixedModeResolver",
    "HeartbeatResponse",
    "HttpConnectivityProbe",
    "JsonCredentialStore",
    "LicenseResolver",
    "LicenseServerClient",
    "LicenseState",
    "RegisterResponse",
    "RegistrationOutcome",
    "StoredCredential",
    "create_resolver",
]

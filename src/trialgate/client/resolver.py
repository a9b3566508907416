"""Client-side license resolution.

The resolver turns the cached token, network reachability and the
server's heartbeat answer into one of four license modes. It never
raises to its callers: every failure lands in a defined mode.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from trialgate.errors import RateLimitedError, RegistrationFailedError, ServerUnavailableError
from trialgate.licensing.modes import Feature, LicenseMode
from trialgate.licensing.registry import is_feature_enabled, should_allow_auto_update

if TYPE_CHECKING:
    from trialgate.client.api import HeartbeatResponse, LicenseServerClient
    from trialgate.client.connectivity import ConnectivityProbe
    from trialgate.client.credentials import CredentialStore, StoredCredential
    from trialgate.licensing.token import TokenCodec, TokenPayload

logger = logging.getLogger("trialgate.client.resolver")

MSG_UNVERIFIED = "License status could not be verified. Running with the cached license."
MSG_NO_CONNECTION = "Could not connect to the license server. Some features are restricted."
MSG_RATE_LIMITED = "Too many license checks today. Status will be refreshed later."


@dataclass(frozen=True)
class LicenseState:
    """What the UI needs to know about the current license."""

    mode: LicenseMode
    key_hint: str | None = None
    trial_days_remaining: int = 0
    server_message: str | None = None
    message: str | None = None
    latest_version: str | None = None
    update_available: bool = False
    force_update: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


@dataclass(frozen=True)
class RegistrationOutcome:
    success: bool
    key_hint: str | None = None
    error: str | None = None


StateListener = Callable[[LicenseState], Awaitable[None] | None]


class BaseResolver:
    """State ownership, subscriptions and scheduling shared by all resolvers.

    Subclasses implement :meth:`_compute`. Resolution cycles are started by
    the application (startup, an explicit re-check), never polled.
    """

    def __init__(self) -> None:
        self._state = LicenseState(mode=LicenseMode.TRIAL)
        self._listeners: list[StateListener] = []
        self._pending: asyncio.Task[LicenseState] | None = None

    @property
    def state(self) -> LicenseState:
        return self._state

    @property
    def mode(self) -> LicenseMode:
        return self._state.mode

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for state changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def is_feature_enabled(self, feature: Feature | str) -> bool:
        return is_feature_enabled(self._state.mode, feature)

    def should_allow_auto_update(self) -> bool:
        return should_allow_auto_update(self._state.mode)

    async def resolve(self) -> LicenseState:
        """Run one resolution cycle and publish its result."""
        try:
            state = await self._compute()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("License resolution failed unexpectedly")
            state = await self._on_unexpected_error()
        await self._publish(state)
        return state

    def request_resolution(self) -> asyncio.Task[LicenseState]:
        """Start a background resolution, superseding any cycle still in flight."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_task(self.resolve())
        return self._pending

    async def close(self) -> None:
        """Cancel the in-flight resolution, if any."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        self._pending = None

    async def register(self, download_key: str) -> RegistrationOutcome:
        raise NotImplementedError

    async def _compute(self) -> LicenseState:
        raise NotImplementedError

    async def _on_unexpected_error(self) -> LicenseState:
        return LicenseState(mode=LicenseMode.RESTRICTED, message=MSG_NO_CONNECTION)

    async def _publish(self, state: LicenseState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        if previous.mode != state.mode:
            logger.info("License mode changed: %s -> %s", previous.mode, state.mode)
        for listener in list(self._listeners):
            try:
                result = listener(state)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("License state listener failed")


class LicenseResolver(BaseResolver):
    """Decides the license mode from local credentials and the license server.

    Order of evaluation:

    1. A trusted cached token issued within ``freshness_hours`` and not
       expired means ``registered`` with no network traffic at all.
    2. Otherwise probe connectivity. Offline devices fall back to any
       trusted cached token (regardless of age), else ``restricted``.
    3. Online devices send a heartbeat. A failed or timed-out heartbeat
       takes the same fallback as being offline.
    4. A heartbeat answer maps to ``registered`` (verified token saved), ``trial``
       or ``expired``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        codec: TokenCodec,
        server: LicenseServerClient,
        connectivity: ConnectivityProbe,
        app_version: str,
        *,
        freshness_hours: float = 24,
        probe_timeout: float = 3.0,
        heartbeat_timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self._credentials = credentials
        self._codec = codec
        self._server = server
        self._connectivity = connectivity
        self._app_version = app_version
        self._freshness_seconds = freshness_hours * 3600
        self._probe_timeout = probe_timeout
        self._heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._last_server_state: LicenseState | None = None

    def _trusted_payload(self, credential: StoredCredential) -> TokenPayload | None:
        """The cached token's payload if it verifies and belongs to this device."""
        payload = self._codec.verify(credential.token)
        if payload is None:
            return None
        if payload.device_id != credential.device_id:
            logger.warning("Cached license token belongs to another device, ignoring it")
            return None
        return payload

    async def _compute(self) -> LicenseState:
        credential = self._credentials.load()
        payload = self._trusted_payload(credential)
        now = self._clock()

        if (
            payload is not None
            and payload.is_fresh(now, self._freshness_seconds)
            and not payload.is_expired(now)
        ):
            return LicenseState(
                mode=LicenseMode.REGISTERED,
                key_hint=payload.key_hint,
                **self._update_info(),
            )

        if not await self._is_online():
            logger.info("License server not reachable, using offline fallback")
            return self._fallback(payload)

        try:
            response = await asyncio.wait_for(
                self._server.heartbeat(
                    credential.device_id,
                    self._app_version,
                    credential.download_key,
                ),
                timeout=self._heartbeat_timeout,
            )
        except RateLimitedError:
            logger.warning("Heartbeat rate limited by license server")
            return self._rate_limited_fallback(payload)
        except (ServerUnavailableError, TimeoutError) as exc:
            logger.warning("Heartbeat failed (%s), using offline fallback", str(exc) or "timeout")
            return self._fallback(payload)

        state = self._from_heartbeat(response, credential, payload)
        self._last_server_state = state
        return state

    async def _is_online(self) -> bool:
        try:
            return await asyncio.wait_for(
                self._connectivity.is_online(),
                timeout=self._probe_timeout,
            )
        except TimeoutError:
            return False

    def _update_info(self) -> dict[str, Any]:
        """Version and message fields from the last heartbeat answer."""
        last = self._last_server_state
        if last is None:
            return {}
        return {
            "server_message": last.server_message,
            "latest_version": last.latest_version,
            "update_available": last.update_available,
            "force_update": last.force_update,
        }

    def _from_heartbeat(
        self,
        response: HeartbeatResponse,
        credential: StoredCredential,
        cached: TokenPayload | None,
    ) -> LicenseState:
        common = {
            "server_message": response.server_message,
            "latest_version": response.latest_version,
            "update_available": response.update_available,
            "force_update": response.force_update,
        }
        if response.registered:
            key_hint = cached.key_hint if cached else None
            if response.token:
                fresh = self._codec.verify(response.token)
                if fresh is not None and fresh.device_id == credential.device_id:
                    self._credentials.save(token=response.token)
                    key_hint = fresh.key_hint
                else:
                    logger.warning("License server returned an untrusted token, keeping the cached one")
            return LicenseState(mode=LicenseMode.REGISTERED, key_hint=key_hint, **common)
        if response.trial_valid:
            return LicenseState(
                mode=LicenseMode.TRIAL,
                trial_days_remaining=response.trial_days_remaining,
                **common,
            )
        return LicenseState(mode=LicenseMode.EXPIRED, **common)

    @staticmethod
    def _fallback(payload: TokenPayload | None) -> LicenseState:
        if payload is not None:
            return LicenseState(
                mode=LicenseMode.REGISTERED,
                key_hint=payload.key_hint,
                message=MSG_UNVERIFIED,
            )
        return LicenseState(mode=LicenseMode.RESTRICTED, message=MSG_NO_CONNECTION)

    def _rate_limited_fallback(self, payload: TokenPayload | None) -> LicenseState:
        if payload is not None:
            return self._fallback(payload)
        if self._last_server_state is not None:
            return LicenseState(**{**asdict(self._last_server_state), "message": MSG_RATE_LIMITED})
        return LicenseState(mode=LicenseMode.RESTRICTED, message=MSG_RATE_LIMITED)

    async def _on_unexpected_error(self) -> LicenseState:
        try:
            return self._fallback(self._trusted_payload(self._credentials.load()))
        except Exception:
            logger.exception("Could not read cached credential")
            return self._fallback(None)

    async def register(self, download_key: str) -> RegistrationOutcome:
        """Bind this device to *download_key* and switch to ``registered``."""
        download_key = download_key.strip()
        if not download_key:
            return RegistrationOutcome(success=False, error="Please enter a download key.")

        credential = self._credentials.load()
        try:
            response = await asyncio.wait_for(
                self._server.register(credential.device_id, download_key),
                timeout=self._heartbeat_timeout,
            )
        except RegistrationFailedError as exc:
            logger.warning("Registration rejected (HTTP %d): %s", exc.status_code, exc)
            return RegistrationOutcome(success=False, error=str(exc))
        except (ServerUnavailableError, TimeoutError):
            return RegistrationOutcome(
                success=False,
                error="Could not reach the license server. Please try again later.",
            )

        payload = self._codec.verify(response.token)
        if payload is None or payload.device_id != credential.device_id:
            logger.error("License server returned an untrusted token on registration")
            return RegistrationOutcome(success=False, error="The license server response was invalid.")

        self._credentials.save(token=response.token, download_key=download_key)
        # A cycle started before registration must not overwrite the new state
        await self.close()
        await self._publish(LicenseState(mode=LicenseMode.REGISTERED, key_hint=payload.key_hint))
        logger.info("Device registered with key %s", payload.key_hint)
        return RegistrationOutcome(success=True, key_hint=payload.key_hint)


class FixedModeResolver(BaseResolver):
    """Resolver that always reports one mode (development override)."""

    def __init__(self, mode: LicenseMode | str) -> None:
        super().__init__()
        self._fixed = LicenseMode(mode)
        logger.warning("License mode is overridden to '%s'", self._fixed.value)

    async def _compute(self) -> LicenseState:
        return LicenseState(mode=self._fixed, message="License mode overridden")

    async def register(self, download_key: str) -> RegistrationOutcome:
        return RegistrationOutcome(
            success=False,
            error="Registration is disabled while the license mode is overridden.",
        )

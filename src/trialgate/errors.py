"""Exception types shared by the license server and client."""

from __future__ import annotations


class TrialgateError(Exception):
    """Base class for all trialgate errors."""


class SigningKeyError(TrialgateError):
    """The token signing key is missing or unusable.

    This is a startup-time misconfiguration: the server must not run
    without a usable private key.
    """


class ValidationError(TrialgateError):
    """A request is missing required fields."""


class DeviceNotFoundError(TrialgateError):
    """Registration was attempted for a device that never sent a heartbeat."""

    def __init__(self, device_id: str) -> None:
        super().__init__("Device not found. Please launch the app first.")
        self.device_id = device_id


class RateLimitExceededError(TrialgateError):
    """A device exceeded its daily heartbeat allowance."""

    def __init__(self, device_id: str, limit: int) -> None:
        super().__init__("Rate limit exceeded. Try again tomorrow.")
        self.device_id = device_id
        self.limit = limit


class DeviceLimitError(TrialgateError):
    """A registration key has no free device slot."""

    def __init__(self, max_devices: int) -> None:
        super().__init__(
            f"Device limit reached ({max_devices} devices). Please contact support."
        )
        self.max_devices = max_devices


# ---------------------------------------------------------------------------
# Client-side errors
# ---------------------------------------------------------------------------


class ServerUnavailableError(TrialgateError):
    """The license server could not be reached or returned garbage."""


class RateLimitedError(TrialgateError):
    """The license server rejected a heartbeat with HTTP 429."""


class RegistrationFailedError(TrialgateError):
    """The license server refused a registration request."""

    def __init__(self, message: str, status_code: int = 200) -> None:
        super().__init__(message)
        self.status_code = status_code

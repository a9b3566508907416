"""License server services: heartbeat and device registration."""

from .heartbeat import HeartbeatResult, HeartbeatService
from .registration import RegistrationResult, RegistrationService

__all__ = [
    "HeartbeatResult",
    "HeartbeatService",
    "RegistrationResult",
    "RegistrationService",
]

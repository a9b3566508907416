"""License modes and gatable desktop features."""

from __future__ import annotations

from enum import StrEnum


class LicenseMode(StrEnum):
    """Resolved license mode of a device."""

    REGISTERED = "registered"
    TRIAL = "trial"
    EXPIRED = "expired"
    RESTRICTED = "restricted"


class Feature(StrEnum):
    """All gatable features of the desktop application."""

    # Baseline (available in every mode)
    POMODORO_TIMER = "pomodoro_timer"
    CHARACTER = "character"

    # Full feature set
    TIMER_SETTINGS = "timer_settings"
    STATS = "stats"
    FUREAI = "fureai"
    WEATHER_SETTINGS = "weather_settings"
    SOUND_SETTINGS = "sound_settings"
    BACKGROUND_NOTIFY = "background_notify"
    EMOTION_ACCUMULATION = "emotion_accumulation"
    AUTO_UPDATE = "auto_update"

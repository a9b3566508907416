"""Feature allow-lists per license mode and gating helpers."""

from __future__ import annotations

from .modes import Feature, LicenseMode

BASELINE_FEATURES: frozenset[Feature] = frozenset({
    Feature.POMODORO_TIMER,
    Feature.CHARACTER,
})

FULL_FEATURES: frozenset[Feature] = BASELINE_FEATURES | frozenset({
    Feature.TIMER_SETTINGS,
    Feature.STATS,
    Feature.FUREAI,
    Feature.WEATHER_SETTINGS,
    Feature.SOUND_SETTINGS,
    Feature.BACKGROUND_NOTIFY,
    Feature.EMOTION_ACCUMULATION,
    Feature.AUTO_UPDATE,
})

# Single source of truth: mode -> explicitly allowed features.
# Anything missing from a set is denied.
FEATURE_REGISTRY: dict[LicenseMode, frozenset[Feature]] = {
    LicenseMode.REGISTERED: FULL_FEATURES,
    LicenseMode.TRIAL: FULL_FEATURES,
    LicenseMode.EXPIRED: BASELINE_FEATURES,
    LicenseMode.RESTRICTED: BASELINE_FEATURES,
}


def is_feature_enabled(mode: LicenseMode | str, feature: Feature | str) -> bool:
    """Check if *feature* may be used in *mode*. Unknown values are denied."""
    try:
        mode = LicenseMode(mode)
        feature = Feature(feature)
    except ValueError:
        return False
    return feature in FEATURE_REGISTRY.get(mode, frozenset())


def enabled_features(mode: LicenseMode | str) -> list[Feature]:
    """List the features allowed in *mode*, in declaration order."""
    return [f for f in Feature if is_feature_enabled(mode, f)]


def should_allow_auto_update(mode: LicenseMode | str) -> bool:
    """Whether the updater may download and install new releases."""
    return is_feature_enabled(mode, Feature.AUTO_UPDATE)

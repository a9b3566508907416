"""Trialgate licensing primitives — modes, feature gating and tokens."""

from .keys import generate_key_pair, load_private_key, load_public_key
from .modes import Feature, LicenseMode
from .registry import (
    FEATURE_REGISTRY,
    enabled_features,
    is_feature_enabled,
    should_allow_auto_update,
)
from .token import TokenCodec, TokenPayload

__all__ = [
    "FEATURE_REGISTRY",
    "Feature",
    "LicenseMode",
    "TokenCodec",
    "TokenPayload",
    "enabled_features",
    "generate_key_pair",
    "is_feature_enabled",
    "load_private_key",
    "load_public_key",
    "should_allow_auto_update",
]

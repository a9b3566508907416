"""Hashing and masking of plaintext registration (download) keys."""

from __future__ import annotations

import hashlib


def hash_download_key(download_key: str) -> str:
    """SHA-256 hash of a plaintext key. Only the hash is ever stored."""
    return hashlib.sha256(download_key.encode()).hexdigest()


def build_key_hint(download_key: str) -> str:
    """Mask the middle of a key for display: ``ABCD1234EFGH`` -> ``ABCD****EFGH``."""
    if len(download_key) <= 8:
        return download_key
    return f"{download_key[:4]}****{download_key[-4:]}"

"""Loading and generating the RSA key pair used for entitlement tokens."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from trialgate.errors import SigningKeyError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

    from trialgate.config import SigningConfig

logger = logging.getLogger("trialgate.licensing.keys")


def generate_key_pair(key_size: int = 2048) -> tuple[str, str]:
    """Generate a new RSA key pair for development and testing.

    Returns:
        (private_pem, public_pem): PKCS#8 private key and SubjectPublicKeyInfo.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _read_pem(inline: str, path: str) -> str:
    if inline:
        # Env vars often carry the PEM with escaped newlines
        return inline.replace("\\n", "\n")
    if path:
        pem_file = Path(path)
        if not pem_file.exists():
            raise SigningKeyError(f"Key file not found: {pem_file}")
        return pem_file.read_text()
    return ""


def load_private_key(config: SigningConfig) -> RSAPrivateKey:
    """Load the server's signing key. Raises ``SigningKeyError`` if unusable."""
    pem = _read_pem(config.private_key, config.private_key_path)
    if not pem:
        raise SigningKeyError(
            "Signing key is not configured "
            "(set TRIALGATE_SIGNING__PRIVATE_KEY or signing.private_key_path)"
        )
    try:
        key = serialization.load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError) as exc:
        raise SigningKeyError(f"Signing key could not be parsed: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningKeyError("Signing key must be an RSA private key")
    return key


def load_public_key(config: SigningConfig) -> RSAPublicKey:
    """Load the verification key, deriving it from the private key if needed."""
    pem = _read_pem(config.public_key, config.public_key_path)
    if not pem:
        logger.debug("No public key configured, deriving from private key")
        return load_private_key(config).public_key()
    try:
        key = serialization.load_pem_public_key(pem.encode())
    except (ValueError, TypeError) as exc:
        raise SigningKeyError(f"Public key could not be parsed: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise SigningKeyError("Public key must be an RSA public key")
    return key

"""Entitlement token signing and verification.

Tokens are RS256 JWTs: ``header.payload.signature``, each segment base64url.
They are signed, never encrypted, so the payload only carries the device
identifier and a masked key hint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import jwt

from trialgate.errors import SigningKeyError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

    from trialgate.config import SigningConfig

logger = logging.getLogger("trialgate.licensing.token")

TOKEN_ALGORITHM = "RS256"
_REQUIRED_CLAIMS = ["deviceId", "keyHint", "iat", "exp"]


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried by an entitlement token."""

    device_id: str
    key_hint: str
    issued_at: int
    expires_at: int

    @classmethod
    def issue(
        cls,
        device_id: str,
        key_hint: str,
        expiry_days: int,
        now: datetime | None = None,
    ) -> TokenPayload:
        """Build a payload valid for *expiry_days* starting at *now*."""
        now = now or datetime.now(UTC)
        issued_at = int(now.replace(tzinfo=now.tzinfo or UTC).timestamp())
        return cls(
            device_id=device_id,
            key_hint=key_hint,
            issued_at=issued_at,
            expires_at=issued_at + int(timedelta(days=expiry_days).total_seconds()),
        )

    def to_claims(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "keyHint": self.key_hint,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> TokenPayload:
        return cls(
            device_id=str(claims["deviceId"]),
            key_hint=str(claims["keyHint"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_fresh(self, now: float, max_age_seconds: float) -> bool:
        """True if the token was issued within the last *max_age_seconds*."""
        return 0 <= now - self.issued_at <= max_age_seconds


class TokenCodec:
    """Signs tokens with the server's private key and verifies them with
    the public key.

    A codec built without a private key can only verify. That is the
    normal shape on the client.
    """

    def __init__(
        self,
        public_key: RSAPublicKey,
        private_key: RSAPrivateKey | None = None,
        algorithm: str = TOKEN_ALGORITHM,
    ) -> None:
        self._public_key = public_key
        self._private_key = private_key
        self._algorithm = algorithm

    @classmethod
    def for_server(cls, config: SigningConfig) -> TokenCodec:
        """Build a signing codec. Raises ``SigningKeyError`` on misconfiguration."""
        from .keys import load_private_key, load_public_key

        private_key = load_private_key(config)
        public_key = load_public_key(config)
        return cls(public_key, private_key, config.algorithm)

    @classmethod
    def for_client(cls, config: SigningConfig) -> TokenCodec:
        """Build a verify-only codec."""
        from .keys import load_public_key

        return cls(load_public_key(config), None, config.algorithm)

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    def sign(self, payload: TokenPayload) -> str:
        """Serialize and sign *payload*. Server only."""
        if self._private_key is None:
            raise SigningKeyError("This codec has no private key and cannot sign tokens")
        return jwt.encode(
            payload.to_claims(),
            self._private_key,
            algorithm=self._algorithm,
            headers={"typ": "JWT"},
        )

    def verify(self, token: str | None) -> TokenPayload | None:
        """Return the payload if *token* is well-formed and correctly signed.

        Expiry is not checked here; callers decide how much staleness they
        tolerate. Any failure returns ``None``, which callers must treat
        exactly like having no token at all.
        """
        if not token or token.count(".") != 2:
            return None
        try:
            claims = jwt.decode(
                token,
                self._public_key,
                algorithms=[self._algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
            return TokenPayload.from_claims(claims)
        except jwt.InvalidTokenError as exc:
            logger.warning("Untrusted license token (%s)", exc)
            return None
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("License token has malformed claims (%s)", exc)
            return None

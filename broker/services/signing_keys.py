"""
Signing key management for broker-issued tokens.

Holds exactly one active RSA key pair plus its key identifier, loaded once at
startup and read-only afterwards.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from broker.core.config import SigningSettings
from broker.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _normalize_pem(value: str) -> bytes:
    # Deployment platforms often flatten PEM newlines into literal "\n".
    return value.replace("\\n", "\n").strip().encode("utf-8")


@dataclass(frozen=True, slots=True)
class GeneratedKeyPair:
    private_key_pem: str
    public_key_pem: str
    key_id: str


def generate_signing_key_pair(key_id: str, *, key_size: int = 2048) -> GeneratedKeyPair:
    """Create a fresh RSA key pair serialized as PEM."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return GeneratedKeyPair(
        private_key_pem=private_pem, public_key_pem=public_pem, key_id=key_id
    )


class SigningKeyManager:
    """Owns the broker's signing key pair and exposes its public half."""

    def __init__(
        self,
        *,
        private_key_pem: Optional[str],
        public_key_pem: Optional[str] = None,
        key_id: str,
    ) -> None:
        self._key_id = key_id
        self._private_key: Optional[rsa.RSAPrivateKey] = None
        self._public_key: Optional[rsa.RSAPublicKey] = None

        if private_key_pem:
            self._private_key = self._load_private_key(private_key_pem)
            self._public_key = self._private_key.public_key()
        if public_key_pem:
            public_key = self._load_public_key(public_key_pem)
            if self._public_key is not None and (
                public_key.public_numbers() != self._public_key.public_numbers()
            ):
                raise ConfigurationError(
                    "JWT_PUBLIC_KEY does not match JWT_PRIVATE_KEY."
                )
            self._public_key = public_key

    @classmethod
    def from_settings(cls, settings: SigningSettings) -> "SigningKeyManager":
        manager = cls(
            private_key_pem=settings.private_key_pem,
            public_key_pem=settings.public_key_pem,
            key_id=settings.key_id,
        )
        if not manager.can_sign:
            logger.warning(
                "JWT_PRIVATE_KEY is not set; token issuance is disabled until "
                "keys are configured (see scripts/generate_signing_keys.py)."
            )
        return manager

    @staticmethod
    def _load_private_key(pem: str) -> rsa.RSAPrivateKey:
        try:
            key = serialization.load_pem_private_key(_normalize_pem(pem), password=None)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("JWT_PRIVATE_KEY is not a valid PEM key.") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ConfigurationError("JWT_PRIVATE_KEY must be an RSA key.")
        return key

    @staticmethod
    def _load_public_key(pem: str) -> rsa.RSAPublicKey:
        try:
            key = serialization.load_pem_public_key(_normalize_pem(pem))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("JWT_PUBLIC_KEY is not a valid PEM key.") from exc
        if not isinstance(key, rsa.RSAPublicKey):
            raise ConfigurationError("JWT_PUBLIC_KEY must be an RSA key.")
        return key

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        if self._private_key is None:
            raise ConfigurationError("No signing key configured (JWT_PRIVATE_KEY).")
        return self._private_key

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        if self._public_key is None:
            raise ConfigurationError("No verification key configured (JWT_PUBLIC_KEY).")
        return self._public_key

    def public_key_set(self) -> Dict[str, Any]:
        """Return the public key as a JSON Web Key Set.

        Raises :class:`ConfigurationError` rather than returning an empty set
        so callers can tell a broken deployment from an intentionally empty one.
        """
        numbers = self.public_key.public_numbers()
        return {
            "keys": [
                {
                    "kty": "RSA",
                    "use": "sig",
                    "alg": SIGNING_ALGORITHM,
                    "kid": self._key_id,
                    "n": _b64url_uint(numbers.n),
                    "e": _b64url_uint(numbers.e),
                }
            ]
        }


__all__ = [
    "GeneratedKeyPair",
    "SIGNING_ALGORITHM",
    "SigningKeyManager",
    "generate_signing_key_pair",
]

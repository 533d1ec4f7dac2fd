"""
Signing and verification of broker-issued JWTs.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

import jwt

from broker.core.errors import AudienceMismatchError, InvalidTokenError
from broker.services.signing_keys import SIGNING_ALGORITHM, SigningKeyManager

Clock = Callable[[], datetime]


def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class VerifiedToken:
    subject: str
    scopes: list[str]
    expires_at: datetime
    jti: Optional[str] = None
    client_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenCodec:
    """Issue and verify RS256 tokens with the key held by the key manager.

    Tokens are self-contained: ``verify`` never consults storage. Revocation
    is layered on top by the authorization server through its session table.
    """

    def __init__(
        self,
        key_manager: SigningKeyManager,
        *,
        issuer: str,
        clock: Clock | None = None,
    ) -> None:
        self._keys = key_manager
        self._issuer = issuer
        self._clock = clock or _system_clock

    @property
    def issuer(self) -> str:
        return self._issuer

    def issue(
        self,
        subject: str,
        scopes: Iterable[str],
        audience: str,
        ttl: int | timedelta,
        *,
        client_id: str | None = None,
        nonce: str | None = None,
        token_type: str | None = None,
        extra: Dict[str, Any] | None = None,
    ) -> IssuedToken:
        """Sign a token for ``subject`` valid for ``ttl`` seconds."""
        lifetime = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + lifetime
        jti = secrets.token_urlsafe(16)
        payload: Dict[str, Any] = {
            "iss": self._issuer,
            "sub": subject,
            "aud": audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
            "scope": " ".join(scopes),
        }
        if client_id:
            payload["client_id"] = client_id
        if nonce:
            payload["nonce"] = nonce
        if token_type:
            payload["token_use"] = token_type
        if extra:
            payload.update(extra)

        token = jwt.encode(
            payload,
            self._keys.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self._keys.key_id, "typ": "JWT"},
        )
        return IssuedToken(token=token, jti=jti, issued_at=issued_at, expires_at=expires_at)

    def verify(
        self,
        token: str,
        *,
        audience: str,
        token_type: str | None = None,
    ) -> VerifiedToken:
        """Validate signature, expiry, issuer and audience of ``token``."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("Token is malformed.") from exc
        if header.get("kid") != self._keys.key_id:
            raise InvalidTokenError("Token was signed with an unknown key.")

        try:
            claims = self._decode(token, audience)
        except jwt.InvalidAudienceError as exc:
            raise AudienceMismatchError(
                "Token was issued for a different audience."
            ) from exc
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("Token has expired.") from exc
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("Token failed verification.") from exc

        if token_type and claims.get("token_use") != token_type:
            raise InvalidTokenError(f"Expected a {token_type} token.")

        scope_claim = claims.get("scope") or ""
        return VerifiedToken(
            subject=claims["sub"],
            scopes=scope_claim.split(),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            jti=claims.get("jti"),
            client_id=claims.get("client_id"),
            claims=claims,
        )

    def _decode(self, token: str, audience: str) -> Dict[str, Any]:
        claims = jwt.decode(
            token,
            self._keys.public_key,
            algorithms=[SIGNING_ALGORITHM],
            audience=audience,
            issuer=self._issuer,
            options={
                "require": ["exp", "iat", "sub", "aud", "iss"],
                "verify_exp": False,
                "verify_iat": False,
            },
        )
        if claims["exp"] <= int(self._clock().timestamp()):
            raise jwt.ExpiredSignatureError("Signature has expired")
        return claims


__all__ = ["IssuedToken", "TokenCodec", "VerifiedToken"]

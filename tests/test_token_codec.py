try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import base64
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from broker.core.errors import (
    AudienceMismatchError,
    ConfigurationError,
    InvalidTokenError,
)
from broker.services.signing_keys import SigningKeyManager, generate_signing_key_pair
from broker.services.token_codec import TokenCodec

ISSUER = "https://broker.test"
AUDIENCE = "https://broker.test/mcp"


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(scope="module")
def key_pair():
    return generate_signing_key_pair("kid-1")


@pytest.fixture()
def keys(key_pair) -> SigningKeyManager:
    return SigningKeyManager(
        private_key_pem=key_pair.private_key_pem,
        public_key_pem=key_pair.public_key_pem,
        key_id="kid-1",
    )


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def codec(keys, clock) -> TokenCodec:
    return TokenCodec(keys, issuer=ISSUER, clock=clock)


def test_public_key_set_exposes_modulus_and_exponent(keys, key_pair) -> None:
    jwks = keys.public_key_set()

    assert len(jwks["keys"]) == 1
    jwk = jwks["keys"][0]
    assert jwk["kty"] == "RSA"
    assert jwk["use"] == "sig"
    assert jwk["alg"] == "RS256"
    assert jwk["kid"] == "kid-1"
    assert jwk["e"] == "AQAB"
    modulus = base64.urlsafe_b64decode(jwk["n"] + "=" * (-len(jwk["n"]) % 4))
    assert int.from_bytes(modulus, "big") == keys.public_key.public_numbers().n


def test_escaped_newlines_in_pem_are_accepted(key_pair) -> None:
    flattened = key_pair.private_key_pem.replace("\n", "\\n")
    manager = SigningKeyManager(private_key_pem=flattened, key_id="kid-1")
    assert manager.can_sign
    assert manager.public_key_set()["keys"][0]["kid"] == "kid-1"


def test_missing_keys_fail_closed() -> None:
    manager = SigningKeyManager(private_key_pem=None, public_key_pem=None, key_id="kid-1")

    assert manager.can_sign is False
    with pytest.raises(ConfigurationError):
        manager.public_key_set()
    with pytest.raises(ConfigurationError):
        _ = manager.private_key


def test_malformed_or_mismatched_keys_are_configuration_errors(key_pair) -> None:
    with pytest.raises(ConfigurationError):
        SigningKeyManager(private_key_pem="not a pem", key_id="kid-1")

    other = generate_signing_key_pair("kid-2")
    with pytest.raises(ConfigurationError):
        SigningKeyManager(
            private_key_pem=key_pair.private_key_pem,
            public_key_pem=other.public_key_pem,
            key_id="kid-1",
        )


def test_issue_then_verify_round_trips_claims(codec: TokenCodec) -> None:
    issued = codec.issue("user-1", ["meetings:read", "tasks:write"], AUDIENCE, 300, nonce="n-1")

    verified = codec.verify(issued.token, audience=AUDIENCE)
    assert verified.subject == "user-1"
    assert verified.scopes == ["meetings:read", "tasks:write"]
    assert verified.expires_at == issued.expires_at
    assert verified.jti == issued.jti
    assert verified.claims["nonce"] == "n-1"
    assert verified.claims["iss"] == ISSUER

    header = jwt.get_unverified_header(issued.token)
    assert header["kid"] == "kid-1"
    assert header["alg"] == "RS256"


def test_token_is_invalid_once_ttl_elapses(codec: TokenCodec, clock: MutableClock) -> None:
    issued = codec.issue("user-1", ["meetings:read"], AUDIENCE, 300)

    clock.now += timedelta(seconds=299)
    assert codec.verify(issued.token, audience=AUDIENCE).subject == "user-1"

    clock.now += timedelta(seconds=1)
    with pytest.raises(InvalidTokenError) as excinfo:
        codec.verify(issued.token, audience=AUDIENCE)
    assert not isinstance(excinfo.value, AudienceMismatchError)


def test_wrong_audience_is_a_distinct_error(codec: TokenCodec) -> None:
    issued = codec.issue("user-1", ["meetings:read"], "https://elsewhere.test", 300)

    with pytest.raises(AudienceMismatchError):
        codec.verify(issued.token, audience=AUDIENCE)


def test_wrong_issuer_is_invalid_token(keys, clock) -> None:
    foreign = TokenCodec(keys, issuer="https://impostor.test", clock=clock)
    issued = foreign.issue("user-1", [], AUDIENCE, 300)
    codec = TokenCodec(keys, issuer=ISSUER, clock=clock)

    with pytest.raises(InvalidTokenError) as excinfo:
        codec.verify(issued.token, audience=AUDIENCE)
    assert not isinstance(excinfo.value, AudienceMismatchError)


def test_signature_from_another_key_is_rejected(codec: TokenCodec, clock) -> None:
    rogue_pair = generate_signing_key_pair("kid-1")
    rogue = TokenCodec(
        SigningKeyManager(private_key_pem=rogue_pair.private_key_pem, key_id="kid-1"),
        issuer=ISSUER,
        clock=clock,
    )
    forged = rogue.issue("user-1", ["meetings:read"], AUDIENCE, 300)

    with pytest.raises(InvalidTokenError):
        codec.verify(forged.token, audience=AUDIENCE)


def test_unknown_key_id_and_garbage_are_rejected(codec: TokenCodec, keys) -> None:
    token = jwt.encode(
        {"sub": "x", "iss": ISSUER, "aud": AUDIENCE, "iat": 0, "exp": 9999999999},
        keys.private_key,
        algorithm="RS256",
        headers={"kid": "kid-9"},
    )
    with pytest.raises(InvalidTokenError):
        codec.verify(token, audience=AUDIENCE)
    with pytest.raises(InvalidTokenError):
        codec.verify("not.a.jwt", audience=AUDIENCE)


def test_token_type_is_enforced(codec: TokenCodec) -> None:
    refresh = codec.issue("user-1", [], ISSUER, 300, token_type="refresh")

    assert codec.verify(refresh.token, audience=ISSUER, token_type="refresh").subject == "user-1"
    with pytest.raises(InvalidTokenError):
        codec.verify(refresh.token, audience=ISSUER, token_type="access")

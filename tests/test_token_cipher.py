try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import pytest

from broker.services.token_cipher import TokenCipherService


def test_token_cipher_roundtrip() -> None:
    cipher = TokenCipherService(secret="super-secret-key")
    plaintext = "zoom-access-token"

    encrypted = cipher.encrypt(plaintext)
    assert encrypted != plaintext
    assert plaintext not in encrypted

    assert cipher.decrypt(encrypted) == plaintext


def test_token_cipher_rejects_bad_ciphertext() -> None:
    cipher = TokenCipherService(secret="another-secret")

    with pytest.raises(ValueError):
        cipher.decrypt("not-valid")


def test_rotated_secret_still_decrypts_old_records() -> None:
    old = TokenCipherService(secret="2025-secret")
    stored = old.encrypt("refresh-token")

    rotated = TokenCipherService(secret="2026-secret", previous_secrets=["2025-secret"])
    assert rotated.decrypt(stored) == "refresh-token"

    with pytest.raises(ValueError):
        TokenCipherService(secret="2026-secret").decrypt(stored)


def test_optional_helpers_pass_through_missing_values() -> None:
    cipher = TokenCipherService(secret="optional")

    assert cipher.encrypt_optional(None) is None
    assert cipher.decrypt_optional(None) is None
    assert cipher.decrypt_optional(cipher.encrypt_optional("value")) == "value"


def test_empty_secret_is_rejected() -> None:
    with pytest.raises(ValueError):
        TokenCipherService(secret="")

import pytest

from storytime.core.security import (
    DecryptionError,
    EncryptionKeyMismatchError,
    decrypt_secret,
    encrypt_secret,
    generate_encryption_key,
    looks_encrypted,
)


def test_encrypted_secret_decrypts_with_same_key():
    key = generate_encryption_key()

    token = encrypt_secret("sk-live-123", secret_key=key)

    assert token != "sk-live-123"
    assert looks_encrypted(token)
    assert decrypt_secret(token, secret_key=key) == "sk-live-123"


def test_different_key_is_reported_as_mismatch():
    token = encrypt_secret("sk-live-123", secret_key=generate_encryption_key())

    with pytest.raises(EncryptionKeyMismatchError):
        decrypt_secret(token, secret_key=generate_encryption_key())


def test_plain_value_is_not_a_mismatch():
    with pytest.raises(DecryptionError) as exc_info:
        decrypt_secret("sk-legacy-plain", secret_key=generate_encryption_key())

    assert not isinstance(exc_info.value, EncryptionKeyMismatchError)
    assert not looks_encrypted("sk-legacy-plain")


def test_empty_value_cannot_be_decrypted():
    with pytest.raises(DecryptionError):
        decrypt_secret("", secret_key=generate_encryption_key())


def test_malformed_key_is_rejected():
    with pytest.raises(ValueError):
        encrypt_secret("secret", secret_key="not-a-valid-key")

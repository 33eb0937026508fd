from cryptography.fernet import Fernet, InvalidToken

FERNET_TOKEN_PREFIX = "gAAAAA"


class DecryptionError(ValueError):
    pass


class EncryptionKeyMismatchError(DecryptionError):
    pass


def _fernet(secret_key: str) -> Fernet:
    try:
        return Fernet(secret_key.encode("utf-8"))
    except ValueError as exc:
        raise ValueError("encryption key must be a urlsafe base64 encoded 32-byte key") from exc


def generate_encryption_key() -> str:
    return Fernet.generate_key().decode("utf-8")


def looks_encrypted(value: str) -> bool:
    return value.startswith(FERNET_TOKEN_PREFIX)


def encrypt_secret(plain_text: str, *, secret_key: str) -> str:
    return _fernet(secret_key).encrypt(plain_text.encode("utf-8")).decode("utf-8")


def decrypt_secret(cipher_text: str, *, secret_key: str) -> str:
    if not cipher_text:
        raise DecryptionError("Encrypted value must be a non-empty string")
    try:
        return _fernet(secret_key).decrypt(cipher_text.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        if looks_encrypted(cipher_text):
            raise EncryptionKeyMismatchError(
                "Value was encrypted with a different encryption key"
            ) from exc
        raise DecryptionError("Value is not a valid encrypted token") from exc

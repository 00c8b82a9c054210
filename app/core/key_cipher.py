"""
At-rest encryption for provider API keys.

Keys are stored as Fernet tokens. The Fernet key is derived from SECRET_KEY,
so rotating SECRET_KEY makes stored keys undecryptable.
"""
import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings


class KeyCipherError(ValueError):
    pass


def _fernet(secret: str = None) -> Fernet:
    secret = secret or settings.SECRET_KEY
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_key(plain: str, secret: str = None) -> str:
    return _fernet(secret).encrypt(plain.encode("utf-8")).decode("ascii")


def decrypt_key(token: str, secret: str = None) -> str:
    try:
        return _fernet(secret).decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        raise KeyCipherError("Stored key could not be decrypted") from e


def fingerprint_key(plain: str) -> str:
    return hashlib.sha256(plain.strip().encode("utf-8")).hexdigest()

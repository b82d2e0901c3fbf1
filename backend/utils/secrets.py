"""Helpers for encrypting/decrypting linked-account secrets stored in the database."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from utils.logger import get_logger

logger = get_logger("secrets")

_ENC_PREFIX = "enc:v1:"
_FERNET_CACHE: dict[str, Fernet] = {}


def _derive_fernet_key(raw_key: str) -> bytes:
    """Derive a Fernet-compatible key from arbitrary input."""
    # Fernet expects 32-byte URL-safe base64 data.
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _get_fernet() -> Optional[Fernet]:
    """Return a Fernet for the configured APP_SECRETS_KEY, or None when unset."""
    from config import settings

    secret_key = settings.APP_SECRETS_KEY
    if not secret_key:
        return None
    fernet = _FERNET_CACHE.get(secret_key)
    if fernet is None:
        fernet = Fernet(_derive_fernet_key(secret_key))
        _FERNET_CACHE[secret_key] = fernet
    return fernet


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value and value.startswith(_ENC_PREFIX))


def encrypt_secret(value: Optional[str]) -> Optional[str]:
    """Encrypt a plaintext secret value. Returns original when no key is configured."""
    if value is None or value == "":
        return None
    if is_encrypted(value):
        return value
    fernet = _get_fernet()
    if fernet is None:
        return value
    token = fernet.encrypt(value.encode("utf-8")).decode("utf-8")
    return _ENC_PREFIX + token


def decrypt_secret(value: Optional[str]) -> Optional[str]:
    """Decrypt a stored secret value. Plaintext values are returned unchanged."""
    if value is None or value == "":
        return None
    if not is_encrypted(value):
        return value
    fernet = _get_fernet()
    if fernet is None:
        logger.warning("Encrypted secret cannot be decrypted without APP_SECRETS_KEY")
        return None
    token = value[len(_ENC_PREFIX) :]
    try:
        return fernet.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.warning("Failed to decrypt stored secret (key rotated or data corrupt)")
        return None

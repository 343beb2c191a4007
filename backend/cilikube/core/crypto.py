from __future__ import annotations

from typing import Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken  # type: ignore[import-untyped]

logger = structlog.get_logger(__name__)

_FERNET_PREFIX = b"enc:"


def _get_fernet(key: str | bytes | None) -> Optional[Fernet]:
    if not key:
        return None
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as exc:
        logger.warning("crypto.invalid_key", error=str(exc))
        return None


def is_encrypted(value: bytes | None) -> bool:
    return bool(value) and value.startswith(_FERNET_PREFIX)  # type: ignore[union-attr]


def encrypt_if_configured(plaintext: bytes | None, key: str | bytes | None) -> bytes | None:
    """Encrypt a blob when a key is configured, otherwise store it as-is."""
    if plaintext is None:
        return None
    f = _get_fernet(key)
    if not f:
        return plaintext
    return _FERNET_PREFIX + f.encrypt(plaintext)


def decrypt_if_encrypted(value: bytes | None, key: str | bytes | None) -> bytes | None:
    if value is None:
        return None
    if not is_encrypted(value):
        return value
    f = _get_fernet(key)
    if not f:
        # No key available, return as-is
        logger.warning("crypto.key_missing")
        return value
    try:
        return f.decrypt(value[len(_FERNET_PREFIX) :])
    except InvalidToken:
        logger.warning("crypto.decrypt_failed")
        return value

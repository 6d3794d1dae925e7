"""Encryption utilities for third-party credentials stored on companies."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings

_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Fernet bound to the configured ENCRYPTION_KEY (validated at settings load)."""
    global _fernet
    if _fernet is None:
        _fernet = Fernet(settings.ENCRYPTION_KEY.strip().encode())
    return _fernet


def encrypt_credential(value: str | None) -> str | None:
    if value is None:
        return None
    if value == "":
        return ""
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_credential(encrypted: str | None) -> str | None:
    if encrypted is None:
        return None
    if encrypted == "":
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted credential (was ENCRYPTION_KEY rotated?)")

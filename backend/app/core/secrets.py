"""Encryption at rest for provider credentials (Fernet, AES-128-CBC + HMAC)."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from config import settings

logger = logging.getLogger("loadout.secrets")

KEY_FILENAME = "secret.key"

__all__ = ["SecretBox", "InvalidToken", "load_or_create_key", "mask_key"]


def mask_key(key: str) -> str:
    """Mask API key for safe display: 'sk-proj-abc...xyz4'."""
    if not key:
        return ""
    if len(key) <= 8:
        return key[:2] + "..." + key[-2:]
    return key[:6] + "..." + key[-4:]


def load_or_create_key(path: Path) -> bytes:
    """Read the Fernet key from ``path``, generating it (mode 0600) on first use."""
    if path.exists():
        return path.read_bytes().strip()

    path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(key)
    logger.info("Generated new credential key at %s", path)
    return key


class SecretBox:
    """Encrypts/decrypts single secrets to URL-safe text tokens."""

    def __init__(self, key: bytes | str) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls) -> "SecretBox":
        if settings.SECRET_KEY:
            return cls(settings.SECRET_KEY)
        return cls(load_or_create_key(Path(settings.DATA_DIR) / KEY_FILENAME))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Raises ``InvalidToken`` if the token was produced with another key."""
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")

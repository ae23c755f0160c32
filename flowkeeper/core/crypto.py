# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Secret Box — Encryption of instance database passwords at rest.

Format: ``salt:iv:tag:ciphertext`` (hex), AES-256-GCM with a key derived
from ENCRYPTION_KEY via PBKDF2-HMAC-SHA256. Without a usable master key the
value is stored as ``plain:<text>`` and a warning is logged.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("flowkeeper.crypto")

PLAIN_PREFIX = "plain:"
SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000
MIN_MASTER_KEY_LENGTH = 32


class SecretDecryptionError(ValueError):
    """Stored secret could not be decrypted with the configured key."""


class SecretBox:
    def __init__(self, master_key: Optional[str]) -> None:
        if not master_key:
            logger.warning(
                "ENCRYPTION_KEY not set; instance DB passwords will be stored in plain text"
            )
            self._master_key = None
        elif len(master_key) < MIN_MASTER_KEY_LENGTH:
            logger.error(
                "ENCRYPTION_KEY must be at least %d characters; storing passwords in plain text",
                MIN_MASTER_KEY_LENGTH,
            )
            self._master_key = None
        else:
            self._master_key = master_key.encode("utf-8")

    @property
    def enabled(self) -> bool:
        return self._master_key is not None

    def _derive(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, text: str) -> str:
        if not text:
            return ""
        if self._master_key is None:
            return PLAIN_PREFIX + text

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive(salt)).encrypt(iv, text.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(part.hex() for part in (salt, iv, tag, ciphertext))

    def decrypt(self, stored: str) -> str:
        if not stored:
            return ""
        if stored.startswith(PLAIN_PREFIX):
            return stored[len(PLAIN_PREFIX):]
        if self._master_key is None:
            raise SecretDecryptionError("Cannot decrypt: ENCRYPTION_KEY not set")

        parts = stored.split(":")
        if len(parts) != 4:
            raise SecretDecryptionError("Invalid encrypted format")
        try:
            salt, iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            plain = AESGCM(self._derive(salt)).decrypt(iv, ciphertext + tag, None)
        except (ValueError, InvalidTag) as exc:
            raise SecretDecryptionError("Failed to decrypt password. Check ENCRYPTION_KEY.") from exc
        return plain.decode("utf-8")

    @staticmethod
    def looks_encrypted(value: str) -> bool:
        return value.startswith(PLAIN_PREFIX) or value.count(":") == 3

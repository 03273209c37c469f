"""AES-256-GCM encryption for contact details kept at rest.

Recovery codes keep the destination email encrypted so the notification
sender can read it back; lookups go through `hash_email` instead.

Tokens are base64(nonce || ciphertext || tag). Each token is bound to a
context string (the column it belongs to) through GCM associated data, so
a value copied into another column fails to decrypt.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from compliance.config import settings

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

RECOVERY_EMAIL_CONTEXT = "recovery_codes.email"


class FieldEncryptor:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            msg = f"AES-256 requires a {KEY_BYTES}-byte key, got {len(key)} bytes"
            raise ValueError(msg)
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str, context: str = "") -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode(), context.encode())
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, context: str = "") -> str:
        """Open a token sealed under the same context.

        Raises:
            ValueError: malformed token, wrong key or wrong context.
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except binascii.Error as exc:
            raise ValueError("Encrypted value is not base64") from exc
        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise ValueError("Encrypted value is truncated")
        try:
            return self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], context.encode()).decode()
        except InvalidTag as exc:
            raise ValueError("Encrypted value failed authentication") from exc


def key_from_settings() -> bytes:
    """The configured key, or a per-process random key when none is usable."""
    configured = settings.security.encryption_key
    problem = None
    if not configured:
        problem = "not set"
    else:
        try:
            key = base64.b64decode(configured, validate=True)
        except binascii.Error:
            problem = "not valid base64"
        else:
            if len(key) == KEY_BYTES:
                return key
            problem = f"{len(key)} bytes instead of {KEY_BYTES}"
    logger.warning("ENCRYPTION_KEY %s, encrypting with an ephemeral key", problem)
    return os.urandom(KEY_BYTES)


field_encryptor = FieldEncryptor(key_from_settings())

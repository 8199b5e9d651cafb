"""
encryption_service.py — SMTP password encryption at rest.

AES-256-GCM with a fresh 12-byte random nonce per encryption and a 128-bit
authentication tag. Stored form is base64(nonce ‖ ciphertext ‖ tag).

Business Rules:
- The key is ENCRYPTION_KEY as UTF-8 and must be exactly 32 bytes
- A wrongly sized key logs a warning and falls back to a fixed dev key
  (never acceptable in production)
- Any tag mismatch or malformed token raises DecryptionError; callers never
  retry it

Called by: smtp_account_service.py, mail_sender.py
Depends on: config.py (encryption_key), cryptography
"""

import base64
import binascii
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from ..config import settings
from ..exceptions import DecryptionError

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

_FALLBACK_KEY = b"this-is-a-32-character-key-fixed"


@lru_cache
def _get_cipher() -> AESGCM:
    """Build the AES-GCM cipher once from the configured key."""
    key = settings.encryption_key.encode("utf-8")
    if len(key) != KEY_SIZE:
        logger.warning(
            "ENCRYPTION_KEY is {} bytes, expected {}; using the built-in fallback key. "
            "Do not run production like this.",
            len(key),
            KEY_SIZE,
        )
        key = _FALLBACK_KEY
    return AESGCM(key)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a secret. Returns base64(nonce ‖ ciphertext ‖ tag)."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = _get_cipher().encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_value(token: str) -> str:
    """Decrypt a value produced by encrypt_value()."""
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plaintext = _get_cipher().decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e
    return plaintext.decode("utf-8")


def mask_value(plaintext: str) -> str:
    """Mask a secret for display: show last 4 chars only."""
    if not plaintext:
        return ""
    if len(plaintext) <= 4:
        return "****"
    return "●" * min(8, len(plaintext) - 4) + plaintext[-4:]

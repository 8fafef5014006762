"""
Credential vault: AES-256-GCM sealing of stored OAuth tokens.

Sealed values have the form ``nonce:tag:ciphertext`` with each part
hex encoded. A fresh 12-byte nonce is drawn for every call to ``seal``.
"""

import hashlib
import logging
import os
import string
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from teamsync.exceptions import VaultIntegrityError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
KEY_HEX_LENGTH = KEY_BYTES * 2
NONCE_BYTES = 12
TAG_BYTES = 16
SEPARATOR = ":"


def _is_hex(value: str) -> bool:
    return bool(value) and all(ch in string.hexdigits for ch in value)


def derive_key(raw_key: Optional[str]) -> bytes:
    """
    Turn the configured key into exactly 32 bytes.

    A 64 character hex key is used as is. Shorter hex keys are right-padded
    with ``0`` and longer ones truncated. Anything that is not hex is hashed
    with SHA-256. A missing key yields a random key that only lives as long
    as the process, so every value sealed with it is lost on restart.

    :param raw_key: Value of ``ENCRYPTION_KEY`` (may be None).
    :return: 32 key bytes.
    """
    if not raw_key:
        logger.warning(
            "ENCRYPTION_KEY is not set; using a random runtime key. "
            "Stored credentials will not survive a restart."
        )
        return os.urandom(KEY_BYTES)

    key = raw_key.strip()
    if not _is_hex(key):
        logger.warning(
            "ENCRYPTION_KEY is not hex encoded; deriving a key with SHA-256. "
            "Set a 64 character hex key."
        )
        return hashlib.sha256(key.encode("utf-8")).digest()

    if len(key) > KEY_HEX_LENGTH:
        logger.warning(
            f"ENCRYPTION_KEY has {len(key)} hex characters, truncating to {KEY_HEX_LENGTH}"
        )
        key = key[:KEY_HEX_LENGTH]
    elif len(key) < KEY_HEX_LENGTH:
        logger.warning(
            f"ENCRYPTION_KEY has {len(key)} hex characters, padding to {KEY_HEX_LENGTH}"
        )
        key = key.ljust(KEY_HEX_LENGTH, "0")

    return bytes.fromhex(key)


def generate_key() -> str:
    """Return a fresh 64 character hex key suitable for ``ENCRYPTION_KEY``."""
    return os.urandom(KEY_BYTES).hex()


class CredentialVault:
    """Authenticated encryption for token strings."""

    def __init__(self, key: Optional[str] = None):
        """
        :param key: Raw ``ENCRYPTION_KEY`` value; see :func:`derive_key`.
        """
        self._aead = AESGCM(derive_key(key))

    def seal(self, plaintext: str) -> str:
        """
        Encrypt a string.

        :param plaintext: Value to protect.
        :return: Opaque ``nonce:tag:ciphertext`` string.
        """
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def open(self, opaque: str) -> str:
        """
        Decrypt a value produced by :meth:`seal`.

        :param opaque: Sealed value.
        :return: Original plaintext.
        :raises VaultIntegrityError: If the value is malformed or was tampered with.
        """
        if not isinstance(opaque, str):
            raise VaultIntegrityError("sealed value must be a string")
        parts = opaque.split(SEPARATOR)
        if len(parts) != 3:
            raise VaultIntegrityError(
                f"sealed value has {len(parts)} parts, expected 3"
            )
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise VaultIntegrityError(f"sealed value is not hex encoded: {e}")
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise VaultIntegrityError("sealed value has an invalid nonce or tag length")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise VaultIntegrityError("sealed value failed authentication")
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise VaultIntegrityError("sealed value is not valid UTF-8")

# =============================================================================
# Secret Encryption
# =============================================================================
# AES-256-GCM encryption for credentials stored at rest (personal IMAP
# account passwords).
#
# An encrypted secret is stored as three base64 strings:
#   - ciphertext
#   - iv   (12 random bytes)
#   - tag  (16-byte GCM authentication tag)
#
# The 32-byte key comes from $MAILPULL_ENCRYPTION_KEY (64 hex chars or
# base64). If the variable is unset we fall back to the system keyring:
#     keyring set mailpull encryption-key
# =============================================================================

import base64
import binascii
import os
import re
import secrets
from dataclasses import dataclass

import keyring
from keyring.errors import KeyringError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_ENV_VAR = "MAILPULL_ENCRYPTION_KEY"
KEYRING_SERVICE = "mailpull"
KEYRING_USERNAME = "encryption-key"

IV_SIZE = 12
TAG_SIZE = 16

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class SecretError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""
    pass


@dataclass(frozen=True)
class EncryptedSecret:
    """Three-part AES-GCM representation of a secret (all base64)."""
    ciphertext: str
    iv: str
    tag: str


def parse_key(raw: str) -> bytes:
    """
    Parse an encryption key given as 64 hex characters or base64.

    Raises:
        SecretError: If the key is not exactly 32 bytes.
    """
    raw = raw.strip()
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)

    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SecretError("Encryption key must be 32 bytes (hex or base64)") from e

    if len(key) != 32:
        raise SecretError("Encryption key must be 32 bytes (hex or base64)")
    return key


def load_key() -> bytes:
    """
    Load the encryption key from the environment, then the keyring.

    Raises:
        SecretError: If no key is configured or the key is malformed.
    """
    raw = os.environ.get(KEY_ENV_VAR, "").strip()
    if not raw:
        try:
            raw = (keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME) or "").strip()
        except KeyringError as e:
            raise SecretError(
                f"{KEY_ENV_VAR} is not set and the keyring is unavailable: {e}"
            ) from e
    if not raw:
        raise SecretError(
            f"{KEY_ENV_VAR} is not set and no key found in keyring. "
            f"Set it with: keyring set {KEYRING_SERVICE} {KEYRING_USERNAME}"
        )
    return parse_key(raw)


class SecretBox:
    """
    Encrypts and decrypts short secrets with AES-256-GCM.

    Usage:
        >>> box = SecretBox(load_key())
        >>> sealed = box.encrypt("hunter2")
        >>> box.decrypt(sealed)
        'hunter2'
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise SecretError("Encryption key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_environment(cls) -> "SecretBox":
        """Build a SecretBox from the configured key."""
        return cls(load_key())

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = secrets.token_bytes(IV_SIZE)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        """
        Decrypt a three-part secret.

        Raises:
            SecretError: If the payload is malformed or fails authentication.
        """
        try:
            iv = base64.b64decode(secret.iv)
            tag = base64.b64decode(secret.tag)
            ciphertext = base64.b64decode(secret.ciphertext)
        except (binascii.Error, ValueError) as e:
            raise SecretError(f"Malformed encrypted secret: {e}") from e

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as e:
            raise SecretError("Failed to decrypt secret (wrong key or corrupted data)") from e

        return plaintext.decode("utf-8")

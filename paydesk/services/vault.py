"""
Field-level encryption for personal data at rest (email, phone, free text).

Blob layout, base64-encoded:  salt (16) | nonce (12) | tag (16) | ciphertext
Each call derives a fresh AES-256-GCM sub-key from the master key and a random
salt with HKDF-SHA256, so no (key, nonce) pair is ever reused.

Write paths (encrypt/decrypt/secure_hash) refuse to run without a valid key.
Only safe_decrypt tolerates bad input, and only on the read path: records
written before encryption was enabled stay readable as plaintext.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from paydesk.errors import AuthenticationFailure, VaultKeyError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
HKDF_INFO = b"aes-256-gcm"
# salt + nonce + tag + at least one byte of ciphertext
MIN_BLOB_LENGTH = SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH + 1


def _load_key(encoded: Optional[str]) -> bytes:
    if not encoded:
        raise VaultKeyError("ENCRYPTION_KEY is required for encryption")
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise VaultKeyError("ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != KEY_LENGTH:
        raise VaultKeyError("ENCRYPTION_KEY must be exactly 32 bytes (256 bits) when decoded")
    return key


def _b64decode_strict(value: str) -> Optional[bytes]:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


class Vault:
    """Authenticated encryption bound to one master key."""

    def __init__(self, encoded_key: Optional[str]):
        self._key = _load_key(encoded_key)

    def _derive(self, salt: bytes) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            info=HKDF_INFO,
        ).derive(self._key)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(self._derive(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; the stored layout keeps it ahead of the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        if not blob:
            return ""
        raw = _b64decode_strict(blob)
        if raw is None or len(raw) < MIN_BLOB_LENGTH:
            raise AuthenticationFailure("encrypted value is malformed")

        salt = raw[:SALT_LENGTH]
        nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        tag = raw[SALT_LENGTH + NONCE_LENGTH:SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH]
        ciphertext = raw[SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH:]

        try:
            plain = AESGCM(self._derive(salt)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailure("authentication tag did not verify") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailure("decrypted value is not UTF-8") from exc

    def safe_decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Read-path decryption. Identity on anything that is not a well-framed blob;
        on a blob that fails authentication, log and return the stored value.
        """
        if not value:
            return value
        if not is_encrypted(value):
            return value
        try:
            return self.decrypt(value)
        except AuthenticationFailure:
            logger.error("vault.safe_decrypt: decryption failed, returning stored value")
            return value

    def secure_hash(self, value: str) -> str:
        """HMAC-SHA256 of value peppered with the vault key, hex-encoded."""
        if not value:
            return ""
        return hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).hexdigest()


def is_encrypted(value: Optional[str]) -> bool:
    """True when value has strict base64 framing and the minimum blob length."""
    if not value or not isinstance(value, str):
        return False
    raw = _b64decode_strict(value)
    return raw is not None and len(raw) >= MIN_BLOB_LENGTH


def secure_compare(a: str, b: str) -> bool:
    """Constant-time string equality."""
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def generate_secure_token(length: int = 32) -> str:
    return secrets.token_hex(length)


def generate_key() -> str:
    """Fresh base64 256-bit master key (same format as `openssl rand -base64 32`)."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


# ---- app-bound helpers (read ENCRYPTION_KEY from the current app config) ----

def _current_vault() -> Vault:
    from flask import current_app
    return Vault(current_app.config.get("ENCRYPTION_KEY"))


def is_configured() -> bool:
    try:
        _current_vault()
    except VaultKeyError:
        return False
    return True


def encrypt(plaintext: str) -> str:
    return _current_vault().encrypt(plaintext)


def decrypt(blob: str) -> str:
    return _current_vault().decrypt(blob)


def safe_decrypt(value: Optional[str]) -> Optional[str]:
    # Plaintext never needs a key; only blobs do
    if not is_encrypted(value):
        return value
    try:
        vault = _current_vault()
    except VaultKeyError as exc:
        logger.warning("vault.safe_decrypt: no usable key (%s), returning stored value", exc)
        return value
    return vault.safe_decrypt(value)


def secure_hash(value: str) -> str:
    return _current_vault().secure_hash(value)

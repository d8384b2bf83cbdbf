"""
Encryption for the audit copy of each exchange.

Ciphers are pluggable. Each encrypted line carries a version prefix so the
cipher used for new records can change without breaking old entries:

    v1:<base64(nonce || ciphertext || tag)>   AES-256-GCM, nonce per record
    <base64(ciphertext)>                      legacy AES-256-ECB/PKCS7

The legacy format is deterministic and unauthenticated; it is kept only so
logs written by earlier deployments stay readable.
"""

import base64
import binascii
import os
import secrets
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import DecryptionError

logger = structlog.get_logger(__name__)

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
LEGACY_VERSION = "legacy"


class AuditCipher(Protocol):
    """Encrypts and decrypts one serialized audit record."""

    version: str

    def encrypt(self, plaintext: bytes) -> bytes:
        ...

    def decrypt(self, ciphertext: bytes) -> bytes:
        ...


class AesGcmCipher:
    """AES-256-GCM with a fresh 96-bit nonce per record."""

    version = "v1"

    def __init__(self, key: bytes) -> None:
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) <= NONCE_SIZE_BYTES:
            raise DecryptionError("Ciphertext too short")
        nonce, sealed = ciphertext[:NONCE_SIZE_BYTES], ciphertext[NONCE_SIZE_BYTES:]
        try:
            return self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e


class AesEcbCipher:
    """
    AES-256-ECB with PKCS7 padding.

    Equal plaintext blocks produce equal ciphertext blocks and nothing detects
    tampering. Only for compatibility with pre-existing logs.
    """

    version = LEGACY_VERSION

    def __init__(self, key: bytes) -> None:
        self._key = key

    def encrypt(self, plaintext: bytes) -> bytes:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.ECB()).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, ciphertext: bytes) -> bytes:
        decryptor = Cipher(algorithms.AES(self._key), modes.ECB()).decryptor()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptionError("Invalid legacy ciphertext") from e


class CipherRegistry:
    """
    Encodes records with the active cipher and decodes any known version.

    Lines without a version prefix are treated as legacy.
    """

    def __init__(self, active: AuditCipher, *others: AuditCipher) -> None:
        self.active = active
        self._by_version: Dict[str, AuditCipher] = {active.version: active}
        for cipher in others:
            self._by_version.setdefault(cipher.version, cipher)

    def encrypt_line(self, plaintext: str) -> str:
        encoded = base64.b64encode(self.active.encrypt(plaintext.encode("utf-8"))).decode("ascii")
        if self.active.version == LEGACY_VERSION:
            return encoded
        return f"{self.active.version}:{encoded}"

    def decrypt_line(self, line: str) -> str:
        line = line.strip()
        version, sep, payload = line.partition(":")
        if not sep:
            version, payload = LEGACY_VERSION, line

        cipher = self._by_version.get(version)
        if cipher is None:
            raise DecryptionError(f"Unknown cipher version '{version}'")

        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Invalid base64 payload") from e

        try:
            return cipher.decrypt(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted record is not UTF-8") from e


def load_or_create_key(key_path: Path) -> bytes:
    """
    Load the deployment key, generating and persisting it on first use.

    Losing this file makes every previously encrypted record unreadable.
    """
    if key_path.exists():
        key = key_path.read_bytes()
        if len(key) != KEY_SIZE_BYTES:
            raise ValueError(f"Key file {key_path} holds {len(key)} bytes, expected {KEY_SIZE_BYTES}")
        logger.info("Loaded audit encryption key", key_file=str(key_path))
        return key

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = secrets.token_bytes(KEY_SIZE_BYTES)
    # Owner-only permissions from creation onwards
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.warning("Generated new audit encryption key", key_file=str(key_path))
    return key


def build_cipher_registry(key: bytes, cipher_name: Optional[str] = "aes-gcm") -> CipherRegistry:
    """Registry whose active cipher is `cipher_name`; both ciphers can decode."""
    gcm = AesGcmCipher(key)
    ecb = AesEcbCipher(key)
    if cipher_name == "aes-ecb":
        return CipherRegistry(ecb, gcm)
    return CipherRegistry(gcm, ecb)

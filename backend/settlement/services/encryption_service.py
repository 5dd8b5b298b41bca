# Overview: AES-256-GCM sealing of archived contract artifacts; key derivation and blob layout.

"""
Archive Encryption

ALGORITHM (fixed, not configurable):
- SHA-256 for all hashes
- AES-256-GCM, 12-byte random nonce per call, 16-byte authentication tag
- Blob layout: nonce || tag || ciphertext

The key is 256 bits derived with SHA-256 from the configured secret and is
injected once at app creation (ArchiveKeyConfig). It is never read from the
environment at call time.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import IntegrityViolation, ValidationError


ALGORITHM = "AES-256-GCM"
HASH_ALGORITHM = "SHA-256"
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ArchiveKeyConfig:
    key: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.key) != KEY_SIZE:
            raise ValidationError("Archive key must be 256 bits", key_size=len(self.key) * 8)

    @classmethod
    def from_secret(cls, secret: str | bytes) -> "ArchiveKeyConfig":
        if not secret:
            raise ValidationError("Archive encryption secret is not configured")
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        return cls(key=hashlib.sha256(secret).digest())


def encrypt(plaintext: bytes, key_config: ArchiveKeyConfig) -> bytes:
    """Seal plaintext; returns nonce || tag || ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key_config.key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return nonce + tag + ciphertext


def decrypt(blob: bytes, key_config: ArchiveKeyConfig) -> bytes:
    """
    Open a sealed blob.

    Raises:
        IntegrityViolation: blob too short or authentication failed
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise IntegrityViolation("Encrypted blob is truncated", blob_size=len(blob))

    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE:]
    try:
        return AESGCM(key_config.key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise IntegrityViolation("Authenticated decryption failed") from exc

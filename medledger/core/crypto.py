from __future__ import annotations

import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medledger.core.errors import ConfigError, IntegrityError, KeyUnavailableError

ALGORITHM = "AES-256-GCM"
KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
ARTIFACT_AAD = b"medledger.artifact.v1"

logger = logging.getLogger("medledger.crypto")


def key_id_from_key_bytes(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


def generate_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(KEY_BYTES)


def write_key_file(path: str, key_bytes: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(key_bytes)
    if os.name != "nt":
        os.chmod(path, 0o600)


def read_key_file(path: str) -> Optional[bytes]:
    if not path or not os.path.exists(path):
        return None
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != KEY_BYTES:
        raise ConfigError("Encryption key file must hold exactly 32 bytes (AES-256).", path=path)
    return b


def parse_hex_key(value: str) -> bytes:
    try:
        b = bytes.fromhex(value.strip())
    except ValueError as e:
        raise ConfigError("Encryption key must be 64 hex characters.") from e
    if len(b) != KEY_BYTES:
        raise ConfigError("Encryption key must be 32 bytes (64 hex characters).")
    return b


@dataclass(frozen=True)
class EncryptedArtifact:
    """Output of one encrypt call. Owned by the pipeline invocation that made it."""

    ciphertext: bytes
    iv: bytes
    tag: bytes
    plaintext_length: int


class CryptoVault:
    """
    AES-256-GCM encryption plus keyless SHA-256 integrity hashing.

    - every encrypt draws a fresh random 96-bit IV; callers cannot supply one
    - decrypt failures (tampered ciphertext/tag, wrong key) raise IntegrityError
    - `durable` is False when the key was generated for this process only
    """

    def __init__(self, key: bytes, *, durable: bool = True, aad: bytes = ARTIFACT_AAD):
        if len(key) != KEY_BYTES:
            raise ConfigError("Encryption key must be 32 bytes (AES-256).")
        self._aes = AESGCM(key)
        self.key_id = key_id_from_key_bytes(key)
        self.durable = bool(durable)
        self._aad = aad

    @classmethod
    def from_sources(
        cls,
        *,
        key_env: str,
        key_path: str,
        allow_ephemeral_key: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> "CryptoVault":
        """
        Provision the key once per process: env var (hex) first, then key file.
        With neither present, refuse unless ephemeral keys are explicitly allowed.
        """
        env = env if env is not None else os.environ
        raw = (env.get(key_env) or "").strip() if key_env else ""
        if raw:
            vault = cls(parse_hex_key(raw))
            logger.info("Encryption key loaded from environment (key_id=%s).", vault.key_id)
            return vault
        from_file = read_key_file(key_path)
        if from_file is not None:
            vault = cls(from_file)
            logger.info("Encryption key loaded from %s (key_id=%s).", key_path, vault.key_id)
            return vault
        if not allow_ephemeral_key:
            raise KeyUnavailableError(key_env=key_env, key_path=key_path)
        vault = cls(generate_key_bytes(), durable=False)
        logger.warning(
            "No encryption key provisioned; generated an EPHEMERAL key (key_id=%s). "
            "Session is NON-DURABLE: artifacts encrypted now cannot be decrypted after restart.",
            vault.key_id,
        )
        return vault

    def encrypt(self, plaintext: bytes) -> EncryptedArtifact:
        iv = secrets.token_bytes(IV_BYTES)
        sealed = self._aes.encrypt(iv, bytes(plaintext), self._aad)
        return EncryptedArtifact(
            ciphertext=sealed[:-TAG_BYTES],
            iv=iv,
            tag=sealed[-TAG_BYTES:],
            plaintext_length=len(plaintext),
        )

    def decrypt(self, ciphertext: bytes, iv: bytes, tag: bytes) -> bytes:
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise IntegrityError("Encryption envelope is malformed.", iv_len=len(iv), tag_len=len(tag))
        try:
            return self._aes.decrypt(iv, bytes(ciphertext) + bytes(tag), self._aad)
        except InvalidTag as e:
            raise IntegrityError(key_id=self.key_id) from e

    @staticmethod
    def hash(data: bytes) -> str:
        return hashlib.sha256(bytes(data)).hexdigest()

"""Field encryption for sensitive credentials (AES-256-GCM)."""

from __future__ import annotations

import base64
import os
from pathlib import Path
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel

from caresync.core.errors import EncryptionError

_TAG_LEN = 16
_NONCE_LEN = 12


class EncryptedField(BaseModel):
    data: str
    iv: str
    tag: str


class EncryptionService(Protocol):
    async def encrypt(self, plaintext: str) -> EncryptedField:
        ...

    async def decrypt(self, bundle: EncryptedField) -> str:
        ...


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64_decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class AesGcmEncryptionService:
    def __init__(self, key: bytes):
        if len(key) not in (16, 24, 32):
            raise EncryptionError("invalid_key_length", length=len(key))
        self._aead = AESGCM(key)

    @classmethod
    def from_key_file(cls, path: str | Path) -> "AesGcmEncryptionService":
        """Load the key, generating and persisting a fresh one on first use."""
        p = Path(path)
        if p.exists():
            try:
                key = _b64_decode(p.read_text(encoding="utf-8").strip())
            except ValueError as exc:
                raise EncryptionError("key_file_unreadable", path=str(p)) from exc
            return cls(key)

        key = AESGCM.generate_key(bit_length=256)
        p.parent.mkdir(parents=True, exist_ok=True)
        # Owner-only from the first byte written.
        fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(_b64(key))
        return cls(key)

    async def encrypt(self, plaintext: str) -> EncryptedField:
        if not isinstance(plaintext, str):
            raise EncryptionError("plaintext_not_str")
        nonce = os.urandom(_NONCE_LEN)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedField(
            data=_b64(sealed[:-_TAG_LEN]),
            iv=_b64(nonce),
            tag=_b64(sealed[-_TAG_LEN:]),
        )

    async def decrypt(self, bundle: EncryptedField) -> str:
        try:
            nonce = _b64_decode(bundle.iv)
            sealed = _b64_decode(bundle.data) + _b64_decode(bundle.tag)
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            raise EncryptionError("decrypt_failed") from exc

"""AES-256-GCM envelopes for check-in answers.

Answers arrive already encrypted by the browser and are only ever decrypted
inside the check-in worker. The envelope layout matches what the browser's
WebCrypto produces: ciphertext and the 16-byte tag are carried separately.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from datetime import datetime, timezone
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, Field

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
DECRYPTION_FAILED_MESSAGE = "Secure decryption failed"


class SecureDecryptionError(Exception):
    """Raised for every decryption failure, whatever the underlying cause."""

    def __init__(self, message: str = DECRYPTION_FAILED_MESSAGE):
        super().__init__(message)


class EncryptedPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    iv: str
    auth_tag: str = Field(alias="authTag")
    key_version: str = Field(alias="keyVersion")
    encrypted_at: str = Field(alias="encryptedAt")

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


def generate_encryption_key() -> str:
    """Return fresh key material in the base64 form `load_encryption_key` expects."""
    return base64.b64encode(os.urandom(KEY_BYTES)).decode()


def load_encryption_key(material: str | bytes) -> bytes:
    if isinstance(material, bytes):
        raw = material
    else:
        try:
            raw = base64.b64decode((material or "").strip(), validate=True)
        except binascii.Error:
            raise ValueError("key material must be base64 encoded") from None
    if len(raw) != KEY_BYTES:
        raise ValueError(f"key must be {KEY_BYTES} bytes, got {len(raw)}")
    return raw


def _canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encrypt_securely(value: Any, key: bytes, key_version: str = "v1") -> EncryptedPayload:
    aesgcm = AESGCM(key)
    nonce = os.urandom(NONCE_BYTES)
    plaintext = bytearray(_canonical_json(value))
    try:
        sealed = aesgcm.encrypt(nonce, bytes(plaintext), None)
    finally:
        clear_sensitive_data(plaintext)

    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return EncryptedPayload(
        data=base64.b64encode(ciphertext).decode(),
        iv=base64.b64encode(nonce).decode(),
        authTag=base64.b64encode(tag).decode(),
        keyVersion=key_version,
        encryptedAt=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


def decrypt_securely(payload: EncryptedPayload | dict, key: bytes) -> Any:
    """Decrypt and parse an envelope.

    Tampering, a wrong key and a malformed envelope all surface as the same
    `SecureDecryptionError`; no partial plaintext is ever returned.
    """
    plaintext: bytearray | None = None
    try:
        if isinstance(payload, dict):
            payload = EncryptedPayload.model_validate(payload)
        ciphertext = base64.b64decode(payload.data, validate=True)
        nonce = base64.b64decode(payload.iv, validate=True)
        tag = base64.b64decode(payload.auth_tag, validate=True)
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise ValueError("malformed envelope")
        plaintext = bytearray(AESGCM(key).decrypt(nonce, ciphertext + tag, None))
        return json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, ValueError, TypeError, binascii.Error, UnicodeDecodeError):
        # json.JSONDecodeError and pydantic's ValidationError are ValueErrors.
        raise SecureDecryptionError() from None
    finally:
        if plaintext is not None:
            clear_sensitive_data(plaintext)


def clear_sensitive_data(data: Any) -> None:
    """Best-effort scrub of decrypted material.

    Mutable buffers are zeroed and containers are emptied in place. Strings
    are immutable in Python, so they can only be released, not overwritten.
    """
    if isinstance(data, bytearray):
        data[:] = bytes(len(data))
    elif isinstance(data, memoryview):
        if not data.readonly:
            data[:] = bytes(data.nbytes)
    elif isinstance(data, dict):
        for value in data.values():
            clear_sensitive_data(value)
        data.clear()
    elif isinstance(data, list):
        for value in data:
            clear_sensitive_data(value)
        data.clear()

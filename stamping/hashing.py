from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

DIGEST_SIZE = 32


@dataclass(frozen=True)
class DocumentFingerprint:
    """SHA-256 digest of a byte sequence."""

    value: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.value, bytes):
            raise TypeError(f"fingerprint must be bytes, got {type(self.value).__name__}")
        if len(self.value) != DIGEST_SIZE:
            raise ValueError(f"fingerprint must be {DIGEST_SIZE} bytes, got {len(self.value)}")

    @classmethod
    def from_hex(cls, hex_digest: str) -> DocumentFingerprint:
        return cls(bytes.fromhex(hex_digest))

    def hex(self) -> str:
        return self.value.hex()

    def __bytes__(self) -> bytes:
        return self.value

    def __str__(self) -> str:
        return self.hex()


def digest(data: bytes) -> DocumentFingerprint:
    """Fingerprint raw bytes."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"digest() expects bytes, got {type(data).__name__}")
    return DocumentFingerprint(hashlib.sha256(data).digest())


def canonical_bytes(value: Any) -> bytes:
    """Deterministic JSON serialization for hashing.

    Mapping keys are sorted and insignificant whitespace is dropped, so two
    payloads that differ only in key order encode identically. Pydantic
    models are dumped in JSON mode first.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def digest_of(value: Any) -> DocumentFingerprint:
    """Fingerprint a structured value through its canonical encoding."""
    return digest(canonical_bytes(value))

from __future__ import annotations

from enum import Enum
from typing import Any


class StampingError(Exception):
    """Base class for trust-layer failures.

    Every error carries a stable machine ``code`` and a ``details`` mapping
    (fingerprints in hex, reason codes) suitable for audit logging.
    """

    code = "STAMPING_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ProtocolReason(str, Enum):
    MALFORMED = "malformed"
    REJECTED = "rejected"
    MODIFIED_GRANT = "modified_grant"
    MISSING_TOKEN = "missing_token"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    IMPRINT_MISMATCH = "imprint_mismatch"
    NONCE_MISSING = "nonce_missing"
    NONCE_MISMATCH = "nonce_mismatch"


class ProtocolError(StampingError):
    """The TSA response is malformed or does not match the request. Not retried."""

    code = "TSA_PROTOCOL_ERROR"

    def __init__(
        self,
        reason: ProtocolReason,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details={"reason": reason.value, **(details or {})})
        self.reason = reason


class TimestampUnavailable(StampingError):
    """Transport or transient TSA failure, surfaced once retries are exhausted."""

    code = "TSA_UNAVAILABLE"

    def __init__(self, message: str, *, attempts: int = 0, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"attempts": attempts, **(details or {})})
        self.attempts = attempts


class TimestampCancelled(StampingError):
    code = "TSA_CANCELLED"


class IdempotencyConflict(StampingError):
    """An idempotency key was reused with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str, *, stored: str, given: str) -> None:
        super().__init__(
            "Idempotency key reused with a different request payload",
            details={"key": key, "stored_fingerprint": stored, "given_fingerprint": given},
        )
        self.key = key


class DuplicateEntry(StampingError):
    """``set`` was called for a key that already holds a live entry."""

    code = "IDEMPOTENCY_DUPLICATE"

    def __init__(self, key: str) -> None:
        super().__init__(f"idempotency key {key!r} already has a live entry", details={"key": key})
        self.key = key


class IdempotencyInProgress(StampingError):
    """Another request holding the key did not finish within the wait bound."""

    code = "IDEMPOTENCY_IN_PROGRESS"

    def __init__(self, key: str, *, waited: float) -> None:
        super().__init__(
            "A request with this idempotency key is still being processed",
            details={"key": key, "waited_seconds": waited},
        )
        self.key = key


class IntegrityError(StampingError):
    code = "INTEGRITY_ERROR"

    def __init__(self, message: str, *, expected: str | None = None, actual: str | None = None) -> None:
        details: dict[str, Any] = {}
        if expected is not None:
            details["expected_fingerprint"] = expected
        if actual is not None:
            details["actual_fingerprint"] = actual
        super().__init__(message, details=details)


class IntegrityMismatch(IntegrityError):
    """The timestamp token does not attest to the document being packed."""

    code = "INTEGRITY_MISMATCH"


class ContentMismatch(IntegrityError):
    code = "CONTENT_MISMATCH"


class TimestampMismatch(IntegrityError):
    code = "TIMESTAMP_MISMATCH"


class TokenInvalid(IntegrityError):
    code = "TOKEN_INVALID"

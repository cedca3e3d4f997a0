from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from stamping.codec import TimestampProtocolCodec, TimestampToken
from stamping.errors import (
    ContentMismatch,
    IntegrityMismatch,
    ProtocolError,
    TimestampMismatch,
    TokenInvalid,
)
from stamping.hashing import DocumentFingerprint, digest
from stamping.models import AuditPack, ChecklistEntry

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _token_der(token: TimestampToken | bytes) -> bytes:
    return token.der if isinstance(token, TimestampToken) else token


class AuditPackBuilder:
    """Assembles one verifiable audit pack per document version.

    The token is re-read from its DER bytes at build time; the pack is only
    built when that token attests to the fingerprint of *document_bytes*.
    """

    def __init__(self, codec: TimestampProtocolCodec | None = None) -> None:
        self._codec = codec or TimestampProtocolCodec()

    def build(
        self,
        document_version: str,
        document_bytes: bytes,
        checklist_entries: Iterable[ChecklistEntry],
        timestamp_token: TimestampToken | bytes,
        *,
        document_ref: str | None = None,
    ) -> AuditPack:
        fingerprint = digest(document_bytes)
        der = _token_der(timestamp_token)

        try:
            info = self._codec.read_token(der)
        except ProtocolError as exc:
            raise IntegrityMismatch(
                f"timestamp token for {document_version} is unreadable: {exc.message}",
                expected=fingerprint.hex(),
            ) from exc

        if info.hashed_message != fingerprint.value:
            raise IntegrityMismatch(
                f"timestamp token does not attest to document {document_version}",
                expected=fingerprint.hex(),
                actual=info.hashed_message.hex(),
            )

        pack = AuditPack(
            document_version=document_version,
            document_fingerprint=fingerprint.hex(),
            document_ref=document_ref,
            checklist_entries=tuple(checklist_entries),
            timestamp_token=der,
            built_at=_now(),
        )
        logger.info(
            "Audit pack built for %s (%d checklist entries, pack=%s)",
            document_version, len(pack.checklist_entries), pack.fingerprint().hex(),
        )
        return pack


class VerificationOutcome(str, Enum):
    VALID = "valid"
    CONTENT_MISMATCH = "content_mismatch"
    TIMESTAMP_MISMATCH = "timestamp_mismatch"
    TOKEN_INVALID = "token_invalid"


_OUTCOME_ERRORS = {
    VerificationOutcome.CONTENT_MISMATCH: ContentMismatch,
    VerificationOutcome.TIMESTAMP_MISMATCH: TimestampMismatch,
    VerificationOutcome.TOKEN_INVALID: TokenInvalid,
}


@dataclass(frozen=True)
class Verification:
    outcome: VerificationOutcome
    computed_fingerprint: DocumentFingerprint
    expected_fingerprint: DocumentFingerprint
    token_fingerprint: str | None = None
    reason: str | None = None

    @property
    def valid(self) -> bool:
        return self.outcome is VerificationOutcome.VALID

    def raise_for_outcome(self) -> None:
        error = _OUTCOME_ERRORS.get(self.outcome)
        if error is None:
            return
        raise error(
            self.reason or self.outcome.value,
            expected=self.expected_fingerprint.hex(),
            actual=self.token_fingerprint or self.computed_fingerprint.hex(),
        )


def verify(
    document_bytes: bytes,
    expected_fingerprint: DocumentFingerprint,
    timestamp_token: TimestampToken | bytes,
    codec: TimestampProtocolCodec | None = None,
) -> Verification:
    """Check that the document still hashes to *expected_fingerprint* and
    that *timestamp_token* attests to that same fingerprint."""
    codec = codec or TimestampProtocolCodec()
    computed = digest(document_bytes)

    if computed != expected_fingerprint:
        return Verification(
            outcome=VerificationOutcome.CONTENT_MISMATCH,
            computed_fingerprint=computed,
            expected_fingerprint=expected_fingerprint,
            reason="document bytes no longer match the expected fingerprint",
        )

    try:
        info = codec.read_token(_token_der(timestamp_token))
    except ProtocolError as exc:
        return Verification(
            outcome=VerificationOutcome.TOKEN_INVALID,
            computed_fingerprint=computed,
            expected_fingerprint=expected_fingerprint,
            reason=exc.message,
        )

    if info.hashed_message != computed.value:
        return Verification(
            outcome=VerificationOutcome.TIMESTAMP_MISMATCH,
            computed_fingerprint=computed,
            expected_fingerprint=expected_fingerprint,
            token_fingerprint=info.hashed_message.hex(),
            reason="timestamp token attests to a different fingerprint",
        )

    return Verification(
        outcome=VerificationOutcome.VALID,
        computed_fingerprint=computed,
        expected_fingerprint=expected_fingerprint,
        token_fingerprint=info.hashed_message.hex(),
    )

"""Trust layer for published regulated documents.

This package is intentionally isolated from the publishing service.
It contains only: SHA-256 content fingerprints, an RFC 3161 codec and TSA
client, an in-memory idempotency store, and the audit-pack builder with its
verification flow.
"""

from stamping.audit_pack import AuditPackBuilder, Verification, VerificationOutcome, verify
from stamping.codec import TimestampProtocolCodec, TimestampRequest, TimestampToken, TokenInfo
from stamping.hashing import DocumentFingerprint, digest, digest_of
from stamping.idempotency import Absent, Conflict, IdempotencyStore, MatchedReplay
from stamping.models import AuditPack, ChecklistEntry
from stamping.tsa import BackoffPolicy, TimestampClient

__all__ = [
    "Absent",
    "AuditPack",
    "AuditPackBuilder",
    "BackoffPolicy",
    "ChecklistEntry",
    "Conflict",
    "DocumentFingerprint",
    "IdempotencyStore",
    "MatchedReplay",
    "TimestampClient",
    "TimestampProtocolCodec",
    "TimestampRequest",
    "TimestampToken",
    "TokenInfo",
    "Verification",
    "VerificationOutcome",
    "digest",
    "digest_of",
    "verify",
]

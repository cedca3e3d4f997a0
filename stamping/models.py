from __future__ import annotations

from datetime import date, datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from stamping.hashing import DocumentFingerprint, canonical_bytes, digest


class ChecklistEntry(BaseModel):
    """Attestation record supplied by an external review workflow."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str = Field(..., min_length=1)
    external_id: str = Field(..., min_length=1, alias="id")
    status: str = Field(..., min_length=1)
    signed_on: date = Field(..., alias="date")


class AuditPack(BaseModel):
    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    document_version: str
    document_fingerprint: str
    document_ref: str | None = None
    checklist_entries: tuple[ChecklistEntry, ...] = ()
    timestamp_token: bytes
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def canonical_bytes(self) -> bytes:
        """Deterministic JSON serialization for hashing.

        Excludes ``built_at`` so that packs built from identical inputs at
        different times share one fingerprint.
        """
        return canonical_bytes(self.model_dump(mode="json", exclude={"built_at"}))

    def fingerprint(self) -> DocumentFingerprint:
        return digest(self.canonical_bytes())

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from stamping.models import ChecklistEntry


# --- Error ---


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: str = ""
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# --- Stamping ---


class StampRequest(BaseModel):
    use_nonce: bool | None = None


class StampResponse(BaseModel):
    doc_id: str
    version: str
    sha256: str
    tsa_serial: str
    tsa_time: datetime
    tsa_policy: str
    token_key: str


# --- Checklists ---


class ChecklistSubmission(BaseModel):
    entries: list[ChecklistEntry]


class ChecklistResponse(BaseModel):
    status: str = "accepted"
    doc_id: str
    version: str
    entries_count: int
    checklist_key: str


# --- Audit packs ---


class AuditPackResponse(BaseModel):
    doc_id: str
    version: str
    pack_key: str
    pack_fingerprint: str
    document_sha256: str
    entries_count: int
    size_bytes: int


# --- Verification ---


class VerifyRequest(BaseModel):
    doc_id: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    sha256: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$")


class VerifyResponse(BaseModel):
    doc_id: str
    version: str
    outcome: str
    valid: bool
    sha256: str
    token_sha256: str | None = None
    reason: str | None = None


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "document-publisher"
    version: str = "0.1.0"
    idempotency_keys: int = 0

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from publisher.routes.documents import document_key, token_key
from publisher.schemas import VerifyRequest, VerifyResponse
from publisher.services import Services, get_services
from stamping.audit_pack import verify
from stamping.hashing import DocumentFingerprint

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/verify", response_model=VerifyResponse, tags=["Verification"])
def verify_document(req: VerifyRequest, services: Services = Depends(get_services)) -> VerifyResponse:
    document = services.blobs.read(document_key(req.doc_id, req.version))
    token = services.blobs.read(token_key(req.doc_id, req.version))

    result = verify(document, DocumentFingerprint.from_hex(req.sha256), token, services.codec)
    if not result.valid:
        logger.warning(
            "Verification of %s %s failed: %s (%s)",
            req.doc_id, req.version, result.outcome.value, result.reason,
        )

    return VerifyResponse(
        doc_id=req.doc_id,
        version=req.version,
        outcome=result.outcome.value,
        valid=result.valid,
        sha256=result.computed_fingerprint.hex(),
        token_sha256=result.token_fingerprint,
        reason=result.reason,
    )

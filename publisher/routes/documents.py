from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import TypeAdapter
from starlette.concurrency import run_in_threadpool

from publisher.metrics import AUDIT_PACK_SIZE
from publisher.schemas import (
    AuditPackResponse,
    ChecklistResponse,
    ChecklistSubmission,
    StampRequest,
    StampResponse,
)
from publisher.services import Services, get_services
from publisher.storage import BlobExists, blob_key
from stamping.errors import TimestampCancelled
from stamping.hashing import digest
from stamping.models import ChecklistEntry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents/{doc_id}/versions/{version}")

_entries_adapter = TypeAdapter(list[ChecklistEntry])

DISCONNECT_POLL_SECONDS = 0.25


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected from %s, cancelling TSA request", request.url.path)
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def document_key(doc_id: str, version: str) -> str:
    return blob_key(doc_id, version, "official", "pdf")


def token_key(doc_id: str, version: str) -> str:
    return blob_key(doc_id, version, "tokens", "tst")


def checklist_key(doc_id: str, version: str) -> str:
    return blob_key(doc_id, version, "checklists", "json")


def pack_key(doc_id: str, version: str) -> str:
    return blob_key(doc_id, version, "audit-packs", "json")


@router.post("/stamp", response_model=StampResponse, tags=["Stamping"])
async def stamp(
    doc_id: str,
    version: str,
    request: Request,
    req: StampRequest | None = None,
    services: Services = Depends(get_services),
) -> StampResponse:
    document = services.blobs.read(document_key(doc_id, version))
    fingerprint = digest(document)
    logger.info("Stamp requested for %s %s (sha256=%s)", doc_id, version, fingerprint.hex())

    use_nonce = services.use_nonce if req is None or req.use_nonce is None else req.use_nonce
    cancel = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        token = await run_in_threadpool(
            services.tsa.request_timestamp, fingerprint, use_nonce=use_nonce, cancel=cancel
        )
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    if cancel.is_set():
        raise TimestampCancelled(
            "client disconnected before the timestamp was stored",
            details={"doc_id": doc_id, "version": version},
        )

    key = token_key(doc_id, version)
    services.blobs.write(key, token.der)

    return StampResponse(
        doc_id=doc_id,
        version=version,
        sha256=fingerprint.hex(),
        tsa_serial=str(token.info.serial_number),
        tsa_time=token.info.gen_time,
        tsa_policy=token.info.policy,
        token_key=key,
    )


@router.post("/checklists", response_model=ChecklistResponse, tags=["Checklists"])
def submit_checklists(
    doc_id: str,
    version: str,
    req: ChecklistSubmission,
    services: Services = Depends(get_services),
) -> ChecklistResponse:
    key = checklist_key(doc_id, version)
    services.blobs.write(key, _entries_adapter.dump_json(req.entries, by_alias=True))
    logger.info("Stored %d checklist entries for %s %s", len(req.entries), doc_id, version)
    return ChecklistResponse(
        doc_id=doc_id,
        version=version,
        entries_count=len(req.entries),
        checklist_key=key,
    )


@router.post("/audit-pack", response_model=AuditPackResponse, tags=["Audit packs"])
def build_audit_pack(
    doc_id: str,
    version: str,
    services: Services = Depends(get_services),
) -> AuditPackResponse:
    key = pack_key(doc_id, version)
    if services.blobs.exists(key):
        raise HTTPException(status_code=409, detail=f"Audit pack already built for {doc_id} {version}")

    doc_key = document_key(doc_id, version)
    document = services.blobs.read(doc_key)
    token = services.blobs.read(token_key(doc_id, version))

    entries: list[ChecklistEntry] = []
    entries_key = checklist_key(doc_id, version)
    if services.blobs.exists(entries_key):
        entries = _entries_adapter.validate_json(services.blobs.read(entries_key))
    else:
        logger.warning("No checklist entries stored for %s %s, packing without them", doc_id, version)

    pack = services.builder.build(
        f"{doc_id}-{version}",
        document,
        entries,
        token,
        document_ref=doc_key,
    )
    data = json.dumps(pack.model_dump(mode="json", by_alias=True), sort_keys=True).encode("utf-8")
    try:
        services.blobs.create(key, data)
    except BlobExists:
        raise HTTPException(status_code=409, detail=f"Audit pack already built for {doc_id} {version}") from None
    AUDIT_PACK_SIZE.observe(len(data))

    return AuditPackResponse(
        doc_id=doc_id,
        version=version,
        pack_key=key,
        pack_fingerprint=pack.fingerprint().hex(),
        document_sha256=pack.document_fingerprint,
        entries_count=len(pack.checklist_entries),
        size_bytes=len(data),
    )

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from publisher.config import Settings
from publisher.storage import BlobStore, LocalBlobStore
from stamping.audit_pack import AuditPackBuilder
from stamping.codec import TimestampProtocolCodec
from stamping.idempotency import IdempotencyStore
from stamping.tsa import BackoffPolicy, TimestampClient


@dataclass
class Services:
    blobs: BlobStore
    idempotency: IdempotencyStore
    codec: TimestampProtocolCodec
    tsa: TimestampClient
    builder: AuditPackBuilder
    use_nonce: bool = True


def build_services(settings: Settings) -> Services:
    codec = TimestampProtocolCodec(accept_granted_with_mods=settings.tsa_accept_granted_with_mods)
    tsa = TimestampClient(
        settings.tsa_url,
        codec=codec,
        backoff=BackoffPolicy(
            max_attempts=settings.tsa_max_attempts,
            base_delay=settings.tsa_backoff_base_seconds,
            factor=settings.tsa_backoff_factor,
        ),
        timeout=settings.tsa_timeout_seconds,
        cert_req=settings.tsa_cert_req,
        policy=settings.tsa_policy_oid,
        username=settings.tsa_user,
        password=settings.tsa_pass,
    )
    return Services(
        blobs=LocalBlobStore(settings.storage_root),
        idempotency=IdempotencyStore(
            ttl=settings.idempotency_ttl,
            wait_timeout=settings.idempotency_wait_seconds,
        ),
        codec=codec,
        tsa=tsa,
        builder=AuditPackBuilder(codec),
        use_nonce=settings.tsa_use_nonce,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from stamping.errors import IdempotencyConflict, IdempotencyInProgress
from stamping.hashing import DocumentFingerprint, digest, digest_of
from stamping.idempotency import MatchedReplay

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    body: bytes
    media_type: str | None = "application/json"


def _error(request: Request, status_code: int, code: str, message: str, details: dict | None = None) -> Response:
    return Response(
        content=json.dumps({
            "error": {
                "code": code,
                "message": message,
                "request_id": getattr(request.state, "request_id", ""),
                "details": details,
            }
        }),
        status_code=status_code,
        media_type="application/json",
    )


def payload_fingerprint(method: str, path: str, body: bytes) -> DocumentFingerprint:
    """Fingerprint a request so that key-order differences in JSON bodies do not count."""
    try:
        parsed = json.loads(body) if body else None
    except ValueError:
        return digest_of({"method": method, "path": path, "body_sha256": digest(body).hex()})
    return digest_of({"method": method, "path": path, "body": parsed})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Ensures every request/response carries an X-Request-Id header."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Runs POSTs under *prefixes* at most once per Idempotency-Key.

    Successful responses are recorded in the application's
    :class:`~stamping.idempotency.IdempotencyStore` and replayed for repeats
    with the same payload. Failed or abandoned requests record nothing.
    """

    def __init__(self, app: ASGIApp, prefixes: tuple[str, ...] = ("/",)) -> None:
        super().__init__(app)
        self.prefixes = prefixes

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method != "POST" or not request.url.path.startswith(self.prefixes):
            return await call_next(request)

        idem_key = request.headers.get("idempotency-key")
        if not idem_key:
            return _error(request, 400, "BAD_REQUEST", "Idempotency-Key header is required")
        if not IDEMPOTENCY_KEY_PATTERN.match(idem_key):
            return _error(
                request, 400, "BAD_REQUEST",
                "Invalid Idempotency-Key format (expected 8-128 alphanumeric, '-' or '_' characters)",
            )

        body = await request.body()
        fingerprint = payload_fingerprint(request.method, request.url.path, body)
        store = request.app.state.services.idempotency

        try:
            claimed = await run_in_threadpool(store.claim, idem_key, fingerprint)
        except (IdempotencyConflict, IdempotencyInProgress) as exc:
            logger.warning("Idempotency %s for key %s on %s", exc.code, idem_key, request.url.path)
            return _error(request, 409, exc.code, exc.message, exc.details)

        if isinstance(claimed, MatchedReplay):
            stored: StoredResponse = claimed.response
            logger.info("Replaying cached response for key %s on %s", idem_key, request.url.path)
            return Response(
                content=stored.body,
                status_code=stored.status_code,
                media_type=stored.media_type,
                headers={"Idempotent-Replayed": "true"},
            )

        try:
            response = await call_next(request)
            if not 200 <= response.status_code < 300:
                return response

            resp_body = b""
            async for chunk in response.body_iterator:
                if isinstance(chunk, str):
                    resp_body += chunk.encode("utf-8")
                else:
                    resp_body += chunk

            claimed.commit(StoredResponse(response.status_code, resp_body, response.media_type))
            return Response(
                content=resp_body,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=dict(response.headers),
            )
        finally:
            claimed.release()

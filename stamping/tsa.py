from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from prometheus_client import Counter

from stamping.codec import TimestampProtocolCodec, TimestampRequest, TimestampToken
from stamping.errors import ProtocolError, TimestampCancelled, TimestampUnavailable
from stamping.hashing import DocumentFingerprint

logger = logging.getLogger(__name__)

QUERY_CONTENT_TYPE = "application/timestamp-query"

TSA_REQUESTS = Counter(
    "tsa_requests_total",
    "TSA request attempts by outcome",
    labelnames=["status"],
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded retry schedule with geometrically increasing delays."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.factor <= 1:
            raise ValueError("factor must be greater than 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return self.base_delay * self.factor ** (attempt - 1)


def new_nonce() -> int:
    return secrets.randbits(64)


class TimestampClient:
    """RFC 3161 Time Stamping Authority client.

    Each attempt builds a fresh request (and a fresh nonce), posts it to the
    TSA and hands the reply to :class:`TimestampProtocolCodec`. Transport
    failures, non-2xx replies and the ``waiting`` status are retried per
    *backoff*; protocol errors propagate at once. No default TSA URL is
    provided -- callers must supply one explicitly.
    """

    def __init__(
        self,
        tsa_url: str,
        *,
        codec: TimestampProtocolCodec | None = None,
        backoff: BackoffPolicy | None = None,
        timeout: float = 10.0,
        cert_req: bool = True,
        policy: str | None = None,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not tsa_url:
            raise ValueError("tsa_url is required")
        self._tsa_url = tsa_url
        self._codec = codec or TimestampProtocolCodec()
        self._backoff = backoff or BackoffPolicy()
        self._timeout = timeout
        self._cert_req = cert_req
        self._policy = policy
        self._auth = httpx.BasicAuth(username, password) if username and password else None
        self._transport = transport
        self._sleep = sleep

    @property
    def tsa_url(self) -> str:
        return self._tsa_url

    @property
    def codec(self) -> TimestampProtocolCodec:
        return self._codec

    def request_timestamp(
        self,
        fingerprint: DocumentFingerprint,
        use_nonce: bool = True,
        cancel: threading.Event | None = None,
    ) -> TimestampToken:
        attempts = self._backoff.max_attempts
        last_error: TimestampUnavailable | None = None

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise TimestampCancelled("timestamp request cancelled", details={"attempts": attempt - 1})

            request = TimestampRequest(
                fingerprint=fingerprint,
                nonce=new_nonce() if use_nonce else None,
                cert_req=self._cert_req,
                policy=self._policy,
            )
            try:
                return self._attempt(request, attempt)
            except TimestampUnavailable as exc:
                last_error = exc
                logger.warning(
                    "TSA request to %s failed (attempt %d/%d): %s",
                    self._tsa_url, attempt, attempts, exc,
                )

            if attempt < attempts and self._wait(self._backoff.delay(attempt), cancel):
                raise TimestampCancelled("timestamp request cancelled", details={"attempts": attempt})

        raise TimestampUnavailable(
            f"TSA request failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            details={"tsa_url": self._tsa_url, "fingerprint": fingerprint.hex()},
        ) from last_error

    def health_check(self, timeout: float = 2.0) -> dict[str, str]:
        """Send the TSA a throwaway digest. Never raises."""
        canary = TimestampRequest(fingerprint=DocumentFingerprint(secrets.token_bytes(32)))
        try:
            resp = self._post(self._codec.encode_request(canary), timeout)
        except httpx.HTTPError as exc:
            return {"status": "error", "message": str(exc)}
        if resp.status_code == 200:
            return {"status": "ok", "message": "TSA accessible"}
        return {"status": "degraded", "message": f"TSA returned status {resp.status_code}"}

    def _attempt(self, request: TimestampRequest, attempt: int) -> TimestampToken:
        try:
            token = self._exchange(request, attempt)
        except TimestampUnavailable:
            TSA_REQUESTS.labels(status="unavailable").inc()
            raise
        except ProtocolError:
            TSA_REQUESTS.labels(status="protocol_error").inc()
            raise
        TSA_REQUESTS.labels(status="granted").inc()
        return token

    def _exchange(self, request: TimestampRequest, attempt: int) -> TimestampToken:
        body = self._codec.encode_request(request)
        started = time.monotonic()
        try:
            resp = self._post(body, self._timeout)
        except httpx.HTTPError as exc:
            raise TimestampUnavailable(f"HTTP error: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise TimestampUnavailable(
                f"TSA returned HTTP {resp.status_code}",
                details={"http_status": resp.status_code},
            )

        token = self._codec.decode_response(resp.content, request)
        logger.info(
            "TSA token granted by %s (attempt %d, serial=%s, %.0fms)",
            self._tsa_url, attempt, token.info.serial_number, (time.monotonic() - started) * 1000,
        )
        return token

    def _post(self, body: bytes, timeout: float) -> httpx.Response:
        with httpx.Client(timeout=timeout, transport=self._transport, auth=self._auth) as c:
            return c.post(self._tsa_url, content=body, headers={"Content-Type": QUERY_CONTENT_TYPE})

    def _wait(self, delay: float, cancel: threading.Event | None) -> bool:
        """Wait out a backoff delay. Returns ``True`` if cancelled meanwhile."""
        if cancel is None:
            self._sleep(delay)
            return False
        return cancel.wait(delay)

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar, Union

from stamping.errors import DuplicateEntry, IdempotencyConflict, IdempotencyInProgress
from stamping.hashing import DocumentFingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IdempotencyEntry:
    key: str
    payload_fingerprint: DocumentFingerprint
    response: Any
    created_at: datetime


@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class MatchedReplay:
    response: Any


@dataclass(frozen=True)
class Conflict:
    key: str
    stored_fingerprint: DocumentFingerprint


CheckResult = Union[Absent, MatchedReplay, Conflict]


@dataclass
class _InFlight:
    payload_fingerprint: DocumentFingerprint
    done: threading.Event = field(default_factory=threading.Event)


class Reservation:
    """Exclusive right to process one idempotency key.

    Exactly one of :meth:`commit` or :meth:`release` takes effect; later
    calls are no-ops.
    """

    def __init__(self, store: IdempotencyStore, key: str, flight: _InFlight) -> None:
        self._store = store
        self.key = key
        self._flight = flight
        self._closed = False

    @property
    def payload_fingerprint(self) -> DocumentFingerprint:
        return self._flight.payload_fingerprint

    def commit(self, response: Any) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._finish(self.key, self._flight, response, store=True)

    def release(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._finish(self.key, self._flight, None, store=False)


class IdempotencyStore:
    """In-memory, TTL-bounded cache of responses keyed by idempotency key.

    The store is the only owner of its entries. Entries are immutable and
    are only removed by :meth:`cleanup`, once older than *ttl*. Contents do
    not survive a restart.

    Reads and writes are serialized by a single lock. Callers that need
    at-most-once execution use :meth:`claim` / :meth:`execute`, which keep
    concurrent first attempts for the same key from both running; the
    operation itself always runs outside the lock.
    """

    def __init__(self, ttl: timedelta, *, wait_timeout: float | None = 30.0) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if wait_timeout is not None and wait_timeout <= 0:
            raise ValueError("wait_timeout must be positive")
        self.ttl = ttl
        self.wait_timeout = wait_timeout
        self._lock = threading.Lock()
        self._entries: dict[str, IdempotencyEntry] = {}
        self._in_flight: dict[str, _InFlight] = {}

    def check(self, key: str, payload_fingerprint: DocumentFingerprint) -> CheckResult:
        with self._lock:
            return self._lookup(key, payload_fingerprint, _now())

    def get(self, key: str) -> IdempotencyEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, _now()):
                return None
            return entry

    def set(self, key: str, payload_fingerprint: DocumentFingerprint, response: Any) -> IdempotencyEntry:
        with self._lock:
            return self._store_entry(key, payload_fingerprint, response)

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = _now()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Cleaned %d expired idempotency keys", len(stale))
        return len(stale)

    def size(self) -> int:
        """Number of live entries. Expired entries awaiting cleanup are not counted."""
        now = _now()
        with self._lock:
            return sum(1 for entry in self._entries.values() if not self._expired(entry, now))

    def claim(self, key: str, payload_fingerprint: DocumentFingerprint) -> Reservation | MatchedReplay:
        """Reserve *key* for processing, or return the response to replay.

        Blocks while another caller holds the key. When that caller commits
        the stored response is replayed; when it releases, the claim is
        retried. Raises :class:`IdempotencyConflict` on a payload mismatch and
        :class:`IdempotencyInProgress` when the holder outlasts *wait_timeout*.
        """
        while True:
            with self._lock:
                result = self._lookup(key, payload_fingerprint, _now())
                if isinstance(result, MatchedReplay):
                    return result
                if isinstance(result, Conflict):
                    raise IdempotencyConflict(
                        key, stored=result.stored_fingerprint.hex(), given=payload_fingerprint.hex()
                    )
                flight = self._in_flight.get(key)
                if flight is None:
                    flight = _InFlight(payload_fingerprint)
                    self._in_flight[key] = flight
                    return Reservation(self, key, flight)

            if flight.payload_fingerprint != payload_fingerprint:
                raise IdempotencyConflict(
                    key, stored=flight.payload_fingerprint.hex(), given=payload_fingerprint.hex()
                )
            if not flight.done.wait(self.wait_timeout):
                raise IdempotencyInProgress(key, waited=self.wait_timeout)

    def execute(
        self,
        key: str,
        payload_fingerprint: DocumentFingerprint,
        operation: Callable[[], T],
    ) -> T:
        """Run *operation* at most once per key and return its response.

        Nothing is recorded when *operation* raises.
        """
        claimed = self.claim(key, payload_fingerprint)
        if isinstance(claimed, MatchedReplay):
            logger.info("Replaying stored response for idempotency key %s", key)
            return claimed.response
        try:
            response = operation()
        except BaseException:
            claimed.release()
            raise
        claimed.commit(response)
        return response

    def _lookup(self, key: str, payload_fingerprint: DocumentFingerprint, now: datetime) -> CheckResult:
        entry = self._entries.get(key)
        if entry is None or self._expired(entry, now):
            return Absent()
        if entry.payload_fingerprint != payload_fingerprint:
            return Conflict(key=key, stored_fingerprint=entry.payload_fingerprint)
        return MatchedReplay(response=entry.response)

    def _store_entry(self, key: str, payload_fingerprint: DocumentFingerprint, response: Any) -> IdempotencyEntry:
        now = _now()
        existing = self._entries.get(key)
        if existing is not None and not self._expired(existing, now):
            raise DuplicateEntry(key)
        entry = IdempotencyEntry(
            key=key,
            payload_fingerprint=payload_fingerprint,
            response=response,
            created_at=now,
        )
        self._entries[key] = entry
        return entry

    def _finish(self, key: str, flight: _InFlight, response: Any, *, store: bool) -> None:
        with self._lock:
            try:
                if store:
                    self._store_entry(key, flight.payload_fingerprint, response)
            finally:
                if self._in_flight.get(key) is flight:
                    del self._in_flight[key]
                flight.done.set()

    def _expired(self, entry: IdempotencyEntry, now: datetime) -> bool:
        return now - entry.created_at > self.ttl

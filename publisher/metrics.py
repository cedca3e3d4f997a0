"""Prometheus metrics for the publisher service.

TSA outcomes are counted by ``stamping.tsa`` itself (``tsa_requests_total``);
this module adds the service-side series and renders the exposition.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Gauge, Histogram, generate_latest

from stamping.idempotency import IdempotencyStore

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST

IDEMPOTENCY_KEYS = Gauge(
    "idempotency_keys",
    "Live entries in the idempotency store",
)

AUDIT_PACK_SIZE = Histogram(
    "audit_pack_size_bytes",
    "Size of stored audit packs",
    buckets=(1_000, 10_000, 100_000, 1_000_000, 10_000_000),
)


def render_metrics(store: IdempotencyStore) -> bytes:
    IDEMPOTENCY_KEYS.set(store.size())
    return generate_latest(REGISTRY)

from __future__ import annotations

import asyncio
import logging

from stamping.idempotency import IdempotencyStore

logger = logging.getLogger(__name__)


def run_idempotency_sweep(store: IdempotencyStore) -> int:
    """Run a single cleanup pass. Returns the number of entries removed."""
    removed = store.cleanup()
    if removed:
        logger.info("Idempotency sweep removed %d expired key(s), %d live", removed, store.size())
    return removed


async def background_cleanup_loop(store: IdempotencyStore, interval: float) -> None:
    """Periodically drop expired idempotency entries in the background."""
    logger.info("Background idempotency cleanup started (interval=%ds)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            run_idempotency_sweep(store)
        except Exception:
            logger.exception("Error in background idempotency sweep")

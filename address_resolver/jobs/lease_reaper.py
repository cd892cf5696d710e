from __future__ import annotations

import logging

from address_resolver.services.repository import BatchStore

logger = logging.getLogger(__name__)


async def run_maintenance(store: BatchStore, *, reap_limit: int) -> tuple[int, int]:
    """Requeue chunks whose lease lapsed and drop expired progress and results."""
    requeued = await store.requeue_expired_chunks(reap_limit)
    if requeued:
        logger.info("requeued expired chunk leases count=%s", requeued)
    purged = await store.purge_expired()
    if purged:
        logger.info("purged expired batch rows count=%s", purged)
    return requeued, purged

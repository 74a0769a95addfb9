"""Scheduled job functions."""

from __future__ import annotations

import logging

from ticketdesk.cache import TTLCache

logger = logging.getLogger(__name__)


def run_cache_sweep(cache: TTLCache) -> int:
    """Evict expired cache entries. Never raises into the scheduler."""
    try:
        removed = cache.sweep()
    except Exception:
        logger.exception("Cache sweep failed")
        return 0
    if removed:
        logger.info("Cache sweep removed %d expired entries", removed)
    else:
        logger.debug("Cache sweep found nothing to remove")
    return removed

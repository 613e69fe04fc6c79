"""
Partition maintenance: age and entry-count ceilings.
"""
import time
import logging
from typing import Optional

from .storage import Partition
from .ttl_policies import CachePolicy

logger = logging.getLogger("cache.eviction")


def prune(
    partition: Partition,
    policy: CachePolicy,
    enforce_max_age: bool = True,
    now: Optional[float] = None,
) -> int:
    """
    Trim a partition down to its policy ceilings.

    Expired entries go first (when enforce_max_age is set), then the oldest
    inserted keys until the count is at or below max_entries.

    Args:
        partition: Partition to trim
        policy: Ceilings for the partition's category
        enforce_max_age: Also drop entries older than policy.max_age_seconds
        now: Reference time (defaults to time.time())

    Returns:
        Number of entries deleted; 0 if pruning failed
    """
    now = now if now is not None else time.time()
    try:
        entries = partition.entries()
        deleted = 0

        if enforce_max_age:
            kept = []
            for entry in entries:
                if entry.is_expired(policy.max_age_seconds, now):
                    partition.delete(entry.key)
                    deleted += 1
                else:
                    kept.append(entry)
            entries = kept

        overflow = len(entries) - policy.max_entries
        for entry in entries[:max(overflow, 0)]:
            partition.delete(entry.key)
            deleted += 1

        if deleted:
            logger.debug(f"Pruned {deleted} entries from {partition.name}")
        return deleted
    except Exception as e:
        logger.warning(f"Prune failed for {partition.name}: {e}")
        return 0

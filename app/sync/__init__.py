"""
Outbound mutation queue and background sync.
"""
from .coalescer import SingleFlight
from .queue import (
    SYNC_ITEM_TAG_PREFIX,
    SYNC_QUEUE_TAG,
    DrainResult,
    MutationQueue,
    item_id_from_tag,
)

__all__ = [
    "SingleFlight",
    "SYNC_ITEM_TAG_PREFIX",
    "SYNC_QUEUE_TAG",
    "DrainResult",
    "MutationQueue",
    "item_id_from_tag",
]

"""
Per-category cache ceilings and strategy assignment.
"""
from dataclasses import dataclass
from typing import Dict

from .core import CacheCategory, Strategy


@dataclass(frozen=True)
class CachePolicy:
    """Eviction ceilings and retrieval strategy for one category."""
    strategy: Strategy
    max_entries: int
    max_age_seconds: int


MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


# Policy by category
CACHE_POLICIES: Dict[CacheCategory, CachePolicy] = {
    CacheCategory.STATIC: CachePolicy(
        strategy=Strategy.CACHE_FIRST,
        max_entries=100,
        max_age_seconds=7 * DAY,
    ),
    CacheCategory.DYNAMIC: CachePolicy(
        strategy=Strategy.NETWORK_FIRST_OFFLINE,
        max_entries=50,
        max_age_seconds=1 * DAY,
    ),
    CacheCategory.API: CachePolicy(
        strategy=Strategy.NETWORK_FIRST,
        max_entries=100,
        max_age_seconds=5 * MINUTE,
    ),
    CacheCategory.IMAGES: CachePolicy(
        strategy=Strategy.CACHE_FIRST,
        max_entries=50,
        max_age_seconds=30 * DAY,
    ),
    CacheCategory.WORKOUTS: CachePolicy(
        strategy=Strategy.CACHE_FIRST,
        max_entries=200,
        max_age_seconds=1 * HOUR,  # Live session state goes stale quickly
    ),
    CacheCategory.TEMPLATES: CachePolicy(
        strategy=Strategy.CACHE_FIRST,
        max_entries=100,
        max_age_seconds=7 * DAY,
    ),
}


def get_policy(category: CacheCategory) -> CachePolicy:
    """Policy for a category, falling back to the static one."""
    return CACHE_POLICIES.get(category, CACHE_POLICIES[CacheCategory.STATIC])

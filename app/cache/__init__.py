"""
Offline HTTP cache with categorized partitions, retrieval strategies and eviction.
"""
from .core import (
    CACHE_STATUS_HEADER,
    CacheCategory,
    CacheEntry,
    CachedResponse,
    Classification,
    FetchRequest,
    NetworkError,
    StorageError,
    Strategy,
)
from .ttl_policies import CACHE_POLICIES, CachePolicy, get_policy
from .classifier import classify, should_intercept
from .storage import (
    CacheStoreRegistry,
    MemoryCacheBackend,
    Partition,
    SqliteCacheBackend,
)
from .eviction import prune
from .network import Network, RequestsNetwork
from .offline import OfflineFallbackRouter, offline_json_response
from .manager import CacheManager

__all__ = [
    # Core types
    "CACHE_STATUS_HEADER",
    "CacheCategory",
    "CacheEntry",
    "CachedResponse",
    "Classification",
    "FetchRequest",
    "NetworkError",
    "StorageError",
    "Strategy",
    # Policies and classification
    "CACHE_POLICIES",
    "CachePolicy",
    "get_policy",
    "classify",
    "should_intercept",
    # Storage
    "CacheStoreRegistry",
    "MemoryCacheBackend",
    "Partition",
    "SqliteCacheBackend",
    "prune",
    # Network and fallbacks
    "Network",
    "RequestsNetwork",
    "OfflineFallbackRouter",
    "offline_json_response",
    # Manager
    "CacheManager",
]

"""
Main cache orchestration: retrieval strategies over partitions and the network.
"""
import threading
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional, Set

from .core import (
    CACHE_STATUS_HEADER,
    CacheCategory,
    CachedResponse,
    FetchRequest,
    NetworkError,
    Strategy,
)
from .classifier import classify
from .eviction import prune
from .network import Network
from .offline import (
    OfflineFallbackRouter,
    image_placeholder_response,
    offline_json_response,
    static_offline_response,
)
from .storage import CacheStoreRegistry, Partition
from .ttl_policies import get_policy

logger = logging.getLogger("cache.manager")


class CacheManager:
    """
    Resolves GET requests against partitions and the network.

    Strategies:
    - network_first: API reads; stale cache copy on network failure
    - cache_first: stale-while-revalidate for static, images, workouts, templates
    - network_first_offline: documents; offline page on total failure

    Cache writes, refreshes and pruning that follow a response run as
    background tasks with their own error boundary.
    """

    def __init__(
        self,
        registry: CacheStoreRegistry,
        network: Network,
        max_revalidation_workers: int = 4,
        enforce_max_age: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache manager.

        Args:
            registry: Partition registry for the current generation
            network: Network used for every upstream attempt
            max_revalidation_workers: Thread pool size for background tasks
            enforce_max_age: Treat entries past their category max age as misses
            clock: Time source, injectable for tests
        """
        self.registry = registry
        self.network = network
        self.offline_router = OfflineFallbackRouter(registry)
        self.enforce_max_age = enforce_max_age
        self._clock = clock

        # Background tasks
        self._background_pool = ThreadPoolExecutor(
            max_workers=max_revalidation_workers,
            thread_name_prefix="cache-background",
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._revalidating: Set[str] = set()
        self._revalidating_lock = threading.Lock()

        # Stats tracking
        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "hits_stale": 0,
            "misses": 0,
            "network_failures": 0,
            "revalidations": 0,
            "offline_responses": 0,
        }

    # =========================================================================
    # Dispatch
    # =========================================================================

    def handle(self, request: FetchRequest) -> CachedResponse:
        """
        Resolve a GET request with the strategy its classification names.

        Raises:
            ValueError: If the request is a mutation
        """
        classification = classify(request)
        if classification.strategy is Strategy.MUTATION:
            raise ValueError(f"{request.method} requests are not cacheable")

        partition = self._open(classification.category)
        if classification.strategy is Strategy.NETWORK_FIRST:
            return self.network_first(request, partition)
        if classification.strategy is Strategy.NETWORK_FIRST_OFFLINE:
            return self.network_first_offline(request, partition)
        return self.cache_first(request, partition)

    def _open(self, category: CacheCategory) -> Optional[Partition]:
        try:
            return self.registry.open(category)
        except Exception as e:
            logger.warning(f"Cannot open {category.value} partition, serving uncached: {e}")
            return None

    # =========================================================================
    # Strategies
    # =========================================================================

    def network_first(self, request: FetchRequest, partition: Optional[Partition]) -> CachedResponse:
        """Network, then stale cached copy, then the offline JSON envelope."""
        try:
            response = self.network.fetch(request)
        except NetworkError as e:
            self._count("network_failures")
            logger.info(f"NETWORK FAILED (api): {request.url} - {e}")
            cached = self._lookup(request, partition)
            if cached is not None:
                self._count("hits_stale")
                return cached.with_header(CACHE_STATUS_HEADER, "stale")
            self._count("offline_responses")
            return offline_json_response()

        self._count("misses")
        if response.ok:
            self._store_in_background(request, response, partition)
        return response

    def cache_first(self, request: FetchRequest, partition: Optional[Partition]) -> CachedResponse:
        """
        Cached copy with a background refresh; network on miss.

        An entry past its max age counts as a miss but is still served if the
        network then fails.
        """
        entry = self._lookup_entry(request, partition)
        expired = entry is not None and self._is_expired(entry, partition)

        if entry is not None and not expired:
            logger.debug(f"CACHE HIT: {request.url}")
            self._count("hits")
            self._trigger_background_revalidate(request, partition)
            return entry.response

        try:
            response = self.network.fetch(request)
        except NetworkError as e:
            self._count("network_failures")
            logger.info(f"NETWORK FAILED (cache-first): {request.url} - {e}")
            if entry is not None:
                self._count("hits_stale")
                return entry.response.with_header(CACHE_STATUS_HEADER, "stale")
            self._count("offline_responses")
            if partition is not None and partition.category is CacheCategory.IMAGES:
                return image_placeholder_response()
            return static_offline_response()

        self._count("misses")
        if response.ok:
            self._store(request, response, partition)
        return response

    def network_first_offline(self, request: FetchRequest, partition: Optional[Partition]) -> CachedResponse:
        """Network, then cached copy, then the role offline page."""
        try:
            response = self.network.fetch(request)
        except NetworkError as e:
            self._count("network_failures")
            logger.info(f"NETWORK FAILED (document): {request.url} - {e}")
            cached = self._lookup(request, partition)
            if cached is not None:
                self._count("hits_stale")
                return cached
            self._count("offline_responses")
            return self.offline_router.route_offline(request)

        self._count("misses")
        if response.ok:
            self._store(request, response, partition)
        return response

    # =========================================================================
    # Storage helpers
    # =========================================================================

    def _lookup_entry(self, request: FetchRequest, partition: Optional[Partition]):
        if partition is None:
            return None
        try:
            return partition.match(request)
        except Exception as e:
            logger.warning(f"Cache read failed for {request.url}, treating as miss: {e}")
            return None

    def _lookup(self, request: FetchRequest, partition: Optional[Partition]) -> Optional[CachedResponse]:
        entry = self._lookup_entry(request, partition)
        return entry.response if entry is not None else None

    def _is_expired(self, entry, partition: Partition) -> bool:
        if not self.enforce_max_age:
            return False
        return entry.is_expired(get_policy(partition.category).max_age_seconds, self._clock())

    def _store(self, request: FetchRequest, response: CachedResponse, partition: Optional[Partition]) -> bool:
        """Write then prune. Failures are logged, never raised."""
        if partition is None:
            return False
        try:
            partition.put(request, response, stored_at=self._clock())
        except Exception as e:
            logger.warning(f"Cache write failed for {request.url}: {e}")
            return False
        prune(
            partition,
            get_policy(partition.category),
            enforce_max_age=self.enforce_max_age,
            now=self._clock(),
        )
        return True

    def store(self, request: FetchRequest, response: CachedResponse, category: CacheCategory) -> bool:
        """Store a response into the current partition of a category."""
        return self._store(request, response, self._open(category))

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _submit(self, name: str, fn: Callable[[], Any]) -> Future:
        """Run fn on the background pool; exceptions are logged and dropped."""

        def guarded():
            try:
                fn()
            except Exception as e:
                logger.warning(f"Background task failed: {name} - {e}")

        future = self._background_pool.submit(guarded)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)
        return future

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _store_in_background(self, request: FetchRequest, response: CachedResponse, partition: Optional[Partition]) -> None:
        snapshot = response.clone()
        self._submit(f"store {request.url}", lambda: self._store(request, snapshot, partition))

    def _trigger_background_revalidate(self, request: FetchRequest, partition: Optional[Partition]) -> None:
        """Refresh a cached entry without blocking the caller."""
        cache_key = request.cache_key
        with self._revalidating_lock:
            if cache_key in self._revalidating:
                logger.debug(f"Already revalidating: {cache_key}")
                return
            self._revalidating.add(cache_key)

        def do_revalidate():
            try:
                response = self.network.fetch(request)
                if response.ok and self._store(request, response, partition):
                    self._count("revalidations")
                    logger.debug(f"Background revalidation complete: {cache_key}")
            except NetworkError as e:
                logger.debug(f"Background revalidation skipped, offline: {cache_key} - {e}")
            finally:
                with self._revalidating_lock:
                    self._revalidating.discard(cache_key)

        self._submit(f"revalidate {cache_key}", do_revalidate)

    def wait_for_background_tasks(self, timeout: Optional[float] = 10.0) -> bool:
        """
        Block until every background task submitted so far has finished.

        Returns:
            True if all tasks finished within the timeout
        """
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._background_pool.shutdown(wait=wait_for_tasks)

    # =========================================================================
    # Stats
    # =========================================================================

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        served_from_cache = stats["hits"] + stats["hits_stale"]
        total_requests = served_from_cache + stats["misses"] + stats["offline_responses"]
        hit_rate = (served_from_cache / total_requests * 100) if total_requests > 0 else 0
        stats["hit_rate_percent"] = round(hit_rate, 1)
        stats["revalidating_count"] = len(self._revalidating)
        return stats

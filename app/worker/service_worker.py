"""
Worker lifecycle and event routing.

One ServiceWorker is one generation: it installs (precaching the app shell),
activates (retiring older generations' partitions and claiming open pages),
then serves fetch, message, sync, push and notification-click events through
one explicit entry point each.
"""
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin, urlsplit

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.cache.classifier import classify, should_intercept
from app.cache.core import (
    CACHE_STATUS_HEADER,
    CacheCategory,
    CachedResponse,
    FetchRequest,
    NetworkError,
    Strategy,
)
from app.cache.manager import CacheManager
from app.cache.network import Network
from app.cache.offline import (
    GENERIC_OFFLINE_PAGE,
    OFFLINE_MESSAGE,
    ROLE_OFFLINE_PAGES,
    offline_json_response,
)
from app.cache.storage import CacheStoreRegistry
from app.schemas import CacheUrlsData, ControlMessage, InvalidateUrlsData, PushPayload
from app.sync.queue import (
    SYNC_QUEUE_TAG,
    DrainResult,
    MutationQueue,
    item_id_from_tag,
)
from .clients import Client, Notification, Platform

logger = logging.getLogger("worker.lifecycle")


# Must be fetchable for install to succeed
PRECACHE_MANIFEST: Tuple[str, ...] = (
    "/",
    GENERIC_OFFLINE_PAGE,
    *ROLE_OFFLINE_PAGES.values(),
    "/manifest.json",
    "/icons/icon-192x192.png",
    "/icons/icon-512x512.png",
    "/locales/en/common.json",
    "/locales/sv/common.json",
)

# Warmed on activate; failures are tolerated
PREWARM_RESOURCES: Tuple[Tuple[str, CacheCategory], ...] = (
    ("/player", CacheCategory.DYNAMIC),
    ("/coach", CacheCategory.DYNAMIC),
    ("/physicaltrainer", CacheCategory.DYNAMIC),
    ("/medicalstaff", CacheCategory.DYNAMIC),
    ("/equipmentmanager", CacheCategory.DYNAMIC),
    ("/api/training/templates", CacheCategory.API),
    ("/api/equipment/catalog", CacheCategory.API),
)

DEFAULT_NOTIFICATION_TITLE = "Hockey Hub"
DEFAULT_NOTIFICATION_BODY = "You have a new notification"

Reply = Callable[[Dict[str, Any]], None]


class WorkerState(Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class InstallError(Exception):
    """Precaching failed; the generation is discarded."""


class ServiceWorker:
    """
    One worker generation and its event handlers.

    Handlers:
    - install / activate: lifecycle
    - handle_fetch: intercepted page requests
    - handle_message: foreground control channel
    - handle_sync: background sync tags
    - handle_push / handle_notification_click: notifications
    """

    def __init__(
        self,
        version: str,
        origin: str,
        registry: CacheStoreRegistry,
        network: Network,
        queue: MutationQueue,
        platform: Platform,
        precache: Sequence[str] = PRECACHE_MANIFEST,
        prewarm: Sequence[Tuple[str, CacheCategory]] = PREWARM_RESOURCES,
        max_revalidation_workers: int = 4,
        enforce_max_age: bool = True,
    ):
        self.version = version
        self.origin = origin.rstrip("/")
        self.registry = registry
        self.network = network
        self.queue = queue
        self.platform = platform
        self.precache = tuple(precache)
        self.prewarm = tuple(prewarm)
        self.cache_manager = CacheManager(
            registry,
            network,
            max_revalidation_workers=max_revalidation_workers,
            enforce_max_age=enforce_max_age,
        )
        self.state = WorkerState.PARSED
        self.registration: Optional["Registration"] = None
        self.skip_waiting_requested = False

    def __repr__(self):
        return f"<ServiceWorker(version='{self.version}', state='{self.state.value}')>"

    def absolute_url(self, url: str) -> str:
        return urljoin(self.origin + "/", url)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def install(self) -> None:
        """
        Precache the app shell into the static partition.

        If the fetch fails but this version's static partition already holds
        every manifest entry (a restart while offline), the generation
        installs from durable storage instead.

        Raises:
            InstallError: If any manifest entry cannot be fetched and no
                complete stored copy exists; a static partition created by
                this attempt is deleted, a pre-existing one is left alone
        """
        self.state = WorkerState.INSTALLING
        logger.info(f"Installing version {self.version}")
        static_name = self.registry.partition_name(CacheCategory.STATIC)
        existed = False
        try:
            existed = static_name in self.registry.list_partitions()
            static = self.registry.open(CacheCategory.STATIC)
            fetched: List[Tuple[FetchRequest, CachedResponse]] = []
            for path in self.precache:
                request = FetchRequest(url=self.absolute_url(path))
                response = self.network.fetch(request)
                if not response.ok:
                    raise InstallError(f"Precache of {path} returned {response.status}")
                fetched.append((request, response))
            # All-or-nothing: write only once every entry was fetched
            for request, response in fetched:
                static.put(request, response)
        except Exception as e:
            if existed and self._precache_stored():
                self.state = WorkerState.INSTALLED
                logger.warning(f"Precache of {self.version} failed ({e}), using stored app shell")
                return
            self.state = WorkerState.REDUNDANT
            if not existed:
                try:
                    self.registry.backend.delete_partition(static_name)
                except Exception as cleanup_error:
                    logger.warning(f"Could not discard static partition: {cleanup_error}")
            logger.error(f"Install of {self.version} failed: {e}")
            if isinstance(e, InstallError):
                raise
            raise InstallError(str(e)) from e

        self.state = WorkerState.INSTALLED
        logger.info(f"Installed version {self.version} ({len(self.precache)} assets precached)")

    def _precache_stored(self) -> bool:
        """True if every manifest entry is present in this version's static partition."""
        try:
            static = self.registry.open(CacheCategory.STATIC)
            return all(
                static.match(FetchRequest(url=self.absolute_url(path))) is not None
                for path in self.precache
            )
        except Exception as e:
            logger.warning(f"Could not inspect stored app shell: {e}")
            return False

    def activate(self) -> None:
        """Retire older generations, warm role resources, claim open pages."""
        self.state = WorkerState.ACTIVATING
        logger.info(f"Activating version {self.version}")

        deleted = self.registry.delete_stale(self.registry.current_names())
        if deleted:
            logger.info(f"Deleted {len(deleted)} stale partitions")

        for path, category in self.prewarm:
            self._warm(path, category)

        self.platform.clients.claim(self.version)
        self.state = WorkerState.ACTIVATED
        logger.info(f"Version {self.version} activated")

    def _warm(self, path: str, category: CacheCategory) -> None:
        headers = {"Accept": "text/html"} if category is CacheCategory.DYNAMIC else {}
        request = FetchRequest(url=self.absolute_url(path), headers=headers)
        try:
            response = self.network.fetch(request)
        except NetworkError as e:
            logger.warning(f"Prewarm of {path} failed: {e}")
            return
        if response.ok:
            self.cache_manager.store(request, response, category)
        else:
            logger.warning(f"Prewarm of {path} returned {response.status}")

    def skip_waiting(self) -> None:
        """Activate as soon as installed, without waiting for pages to close."""
        self.skip_waiting_requested = True
        if self.registration is not None and self.state is WorkerState.INSTALLED:
            self.registration.promote(self)

    def shutdown(self) -> None:
        self.cache_manager.shutdown(wait_for_tasks=False)

    # =========================================================================
    # Fetch
    # =========================================================================

    def handle_fetch(self, request: FetchRequest) -> Optional[CachedResponse]:
        """
        Resolve an intercepted request.

        Returns:
            The response, or None if the request is not intercepted (non-http
            schemes are left to the platform)
        """
        if not should_intercept(request):
            return None

        if classify(request).strategy is Strategy.MUTATION:
            return self._handle_mutation(request)
        return self.cache_manager.handle(request)

    def _handle_mutation(self, request: FetchRequest) -> CachedResponse:
        """Send a write; queue it for background sync if the network is down."""
        try:
            return self.network.fetch(request)
        except NetworkError as e:
            logger.info(f"Mutation {request.method} {request.url} failed, queueing: {e}")

        try:
            mutation_id = self.queue.enqueue(request)
        except SQLAlchemyError as e:
            logger.error(f"Could not queue {request.method} {request.url}: {e}")
            return offline_json_response()
        self.platform.sync.register(SYNC_QUEUE_TAG)
        payload = {"queued": True, "id": mutation_id, "message": OFFLINE_MESSAGE}
        return CachedResponse(
            status=202,
            body=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", CACHE_STATUS_HEADER: "queued"},
            url=request.url,
        )

    # =========================================================================
    # Control channel
    # =========================================================================

    def handle_message(self, message: Any, reply: Optional[Reply] = None) -> Optional[Dict[str, Any]]:
        """
        Handle a {type, data} message from a foreground page.

        The reply, if any, is passed to `reply` and also returned. Malformed
        messages get {"success": False, "error": ...} when a reply port exists
        and are ignored otherwise.
        """
        try:
            parsed = ControlMessage.model_validate(message)
            result = self._dispatch_message(parsed)
        except ValidationError as e:
            logger.warning(f"Malformed control message: {e.errors()[:1]}")
            result = {"success": False, "error": _validation_summary(e)}
        except Exception as e:
            logger.error(f"Control message failed: {e}", exc_info=True)
            result = {"success": False, "error": str(e)}

        if result is not None and reply is not None:
            reply(result)
        return result

    def _dispatch_message(self, message: ControlMessage) -> Optional[Dict[str, Any]]:
        if message.type == "skip-waiting":
            self.skip_waiting()
            return None

        if message.type == "clear-cache":
            self.registry.delete_all()
            return {"success": True}

        if message.type == "cache-urls":
            data = CacheUrlsData.model_validate(message.data or {})
            return self.cache_urls(data.urls, data.cacheName)

        if message.type == "invalidate-urls":
            data = InvalidateUrlsData.model_validate(message.data or {})
            removed = sum(self.registry.invalidate(self.absolute_url(url)) for url in data.urls)
            return {"success": True, "removed": removed}

        if message.type == "get-status":
            return {
                "success": True,
                "version": self.version,
                "state": self.state.value,
                "partitions": self.registry.get_stats(),
                "queued": self.queue.count(),
                "stats": self.cache_manager.get_stats(),
            }

        if message.type == "sync-now":
            result = self.queue.drain()
            return {"success": True, **result.to_dict()}

        return {"success": False, "error": f"Unknown message type: {message.type}"}

    def cache_urls(self, urls: List[str], cache_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Fetch and store each URL.

        Args:
            urls: Absolute or origin-relative URLs
            cache_name: Category value ("api", "static", ...) or full partition
                name; by default each URL goes where the classifier routes it
        """
        category = None
        if cache_name:
            category = self._category_for_cache_name(cache_name)
            if category is None:
                return {"success": False, "error": f"Unknown cache: {cache_name}"}

        failures = []
        for url in urls:
            request = FetchRequest(url=self.absolute_url(url))
            target = category or classify(request).category or CacheCategory.STATIC
            try:
                response = self.network.fetch(request)
            except NetworkError as e:
                failures.append(f"{url}: {e}")
                continue
            if not response.ok:
                failures.append(f"{url}: HTTP {response.status}")
                continue
            if not self.cache_manager.store(request, response, target):
                failures.append(f"{url}: could not be stored")

        if failures:
            return {"success": False, "error": "; ".join(failures)}
        return {"success": True}

    def _category_for_cache_name(self, cache_name: str) -> Optional[CacheCategory]:
        for category in CacheCategory:
            if cache_name in (category.value, self.registry.partition_name(category)):
                return category
        return None

    # =========================================================================
    # Background sync
    # =========================================================================

    def handle_sync(self, tag: str) -> Optional[DrainResult]:
        """
        Drain the queue for the generic tag, replay one item for a per-item tag.

        Returns:
            The drain outcome, or None for tags this worker does not own
        """
        if tag == SYNC_QUEUE_TAG:
            return self.queue.drain()

        mutation_id = item_id_from_tag(tag)
        if mutation_id is not None:
            result = DrainResult()
            if self.queue.replay(mutation_id):
                result.succeeded.append(mutation_id)
            elif self.queue.get(mutation_id) is not None:
                result.failed.append(mutation_id)
            return result

        logger.debug(f"Ignoring unknown sync tag: {tag}")
        return None

    # =========================================================================
    # Push & notifications
    # =========================================================================

    def handle_push(self, payload: Union[bytes, str, Dict[str, Any], None]) -> Notification:
        """Show a notification for an incoming push message."""
        push = _parse_push(payload)
        data = push.data.model_dump() if push.data else {}
        data["url"] = data.get("url") or "/"
        return self.platform.notifications.show(
            title=push.title or DEFAULT_NOTIFICATION_TITLE,
            body=push.body or DEFAULT_NOTIFICATION_BODY,
            data=data,
            actions=[action.model_dump(exclude_none=True) for action in push.actions],
        )

    def handle_notification_click(self, notification_id: int, action: Optional[str] = None) -> Optional[Client]:
        """
        Close the notification and bring its target page forward.

        Focuses an open page already showing the target URL, otherwise opens one.
        """
        notification = self.platform.notifications.close(notification_id)
        if notification is None:
            logger.debug(f"No notification #{notification_id}")
            return None
        if action == "dismiss":
            return None

        target = notification.data.get("url") or "/"
        for client in self.platform.clients.match_all():
            if _same_page(client.url, target):
                logger.info(f"Focusing open page {client.url}")
                return self.platform.clients.focus(client)
        return self.platform.clients.open_window(target, controller=self.version)


class Registration:
    """
    Active and waiting generations for one scope.

    The first generation activates as soon as it installs. Later ones wait
    until skip_waiting() or until no page is controlled by the active one.
    """

    def __init__(self, platform: Optional[Platform] = None):
        self.platform = platform or Platform()
        self.active: Optional[ServiceWorker] = None
        self.waiting: Optional[ServiceWorker] = None

    def register(self, worker: ServiceWorker) -> ServiceWorker:
        """
        Install a new generation and activate it when allowed.

        Raises:
            InstallError: If install fails; the active generation keeps serving
        """
        worker.registration = self
        worker.install()

        if self.waiting is not None and self.waiting is not worker:
            self.waiting.state = WorkerState.REDUNDANT
            self.waiting.shutdown()
        self.waiting = worker

        if (
            self.active is None
            or worker.skip_waiting_requested
            or not self.platform.clients.controlled_by(self.active.version)
        ):
            self.promote(worker)
        return worker

    def promote(self, worker: ServiceWorker) -> None:
        """Activate the waiting generation, retiring the active one."""
        if worker is not self.waiting:
            return
        self.waiting = None
        previous = self.active
        worker.activate()
        self.active = worker
        if previous is not None and previous is not worker:
            previous.state = WorkerState.REDUNDANT
            previous.shutdown()

    def activate_waiting_if_idle(self) -> bool:
        """Promote the waiting generation once no page uses the active one."""
        if self.waiting is None:
            return False
        if self.active is not None and self.platform.clients.controlled_by(self.active.version):
            return False
        self.promote(self.waiting)
        return True

    def handle_fetch(self, request: FetchRequest) -> Optional[CachedResponse]:
        if self.active is None:
            return None
        return self.active.handle_fetch(request)


def _validation_summary(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def _parse_push(payload: Union[bytes, str, Dict[str, Any], None]) -> PushPayload:
    """Push bodies are JSON; plain text becomes the notification body."""
    if payload is None:
        return PushPayload()
    if isinstance(payload, dict):
        return PushPayload.model_validate(payload)
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    try:
        decoded = json.loads(text)
    except ValueError:
        return PushPayload(body=text)
    if isinstance(decoded, dict):
        try:
            return PushPayload.model_validate(decoded)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed push fields: {e.errors()[:1]}")
    return PushPayload(body=text)


def _same_page(client_url: str, target: str) -> bool:
    client_parts = urlsplit(client_url)
    target_parts = urlsplit(target)
    return (client_parts.path or "/", client_parts.query) == (target_parts.path or "/", target_parts.query)

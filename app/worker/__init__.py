"""
Worker lifecycle, event routing and the platform surfaces it drives.
"""
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.cache import CacheStoreRegistry, Network, RequestsNetwork, SqliteCacheBackend
from app.cache.storage import CacheBackend
from app.db import create_session_factory
from app.sync import MutationQueue
from .clients import (
    Client,
    ClientRegistry,
    Notification,
    NotificationCenter,
    Platform,
    SyncRegistry,
)
from .service_worker import (
    PRECACHE_MANIFEST,
    PREWARM_RESOURCES,
    InstallError,
    Registration,
    ServiceWorker,
    WorkerState,
)


def build_service_worker(
    settings,
    platform: Platform,
    network: Optional[Network] = None,
    backend: Optional[CacheBackend] = None,
    session_factory: Optional[sessionmaker] = None,
    **kwargs,
) -> ServiceWorker:
    """
    Wire a worker generation from settings.

    Any collaborator not supplied is built from settings: a requests network,
    the SQLite cache file and the queue database.
    """
    network = network or RequestsNetwork(timeout=settings.network_timeout_seconds)
    backend = backend or SqliteCacheBackend(settings.cache_db_path)
    session_factory = session_factory or create_session_factory(settings.queue_database_url)

    registry = CacheStoreRegistry(backend, version=settings.sw_version, prefix=settings.cache_prefix)
    queue = MutationQueue(session_factory, network, notify=platform.clients.post_message)
    return ServiceWorker(
        version=settings.sw_version,
        origin=settings.upstream_base_url,
        registry=registry,
        network=network,
        queue=queue,
        platform=platform,
        max_revalidation_workers=settings.max_revalidation_workers,
        enforce_max_age=settings.enforce_max_age,
        **kwargs,
    )


__all__ = [
    "Client",
    "ClientRegistry",
    "Notification",
    "NotificationCenter",
    "Platform",
    "SyncRegistry",
    "PRECACHE_MANIFEST",
    "PREWARM_RESOURCES",
    "InstallError",
    "Registration",
    "ServiceWorker",
    "WorkerState",
    "build_service_worker",
]

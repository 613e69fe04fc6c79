"""
Shared fixtures: a scriptable fake network, in-memory cache storage, and a
SQLite queue database under tmp_path.
"""
import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from app.cache import (
    CachedResponse,
    CacheStoreRegistry,
    FetchRequest,
    MemoryCacheBackend,
    NetworkError,
)
from app.db import create_session_factory
from app.sync import MutationQueue
from app.worker import Platform, ServiceWorker


ORIGIN = "https://hub.example.com"
VERSION = "v2"


class FakeNetwork:
    """
    Network double.

    Responses are registered per (method, url); unknown URLs answer 404.
    Setting `online = False` or listing a URL in `failing` raises NetworkError.
    """

    def __init__(self):
        self.online = True
        self.failing: Set[str] = set()
        self.routes: Dict[Tuple[str, str], CachedResponse] = {}
        self.calls: List[FetchRequest] = []
        self.gate: Optional[threading.Event] = None
        self.closed = False
        self._lock = threading.Lock()

    def respond(self, url: str, body: bytes = b"ok", status: int = 200,
                method: str = "GET", headers: Optional[dict] = None) -> None:
        self.routes[(method, url)] = CachedResponse(
            status=status, body=body, headers=headers or {"Content-Type": "text/plain"}, url=url
        )

    def fetch(self, request: FetchRequest) -> CachedResponse:
        with self._lock:
            self.calls.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if not self.online or request.url in self.failing:
            raise NetworkError(f"offline: {request.url}")
        response = self.routes.get((request.method, request.url))
        if response is None:
            return CachedResponse(status=404, body=b"not found", url=request.url)
        return response.clone()

    def close(self) -> None:
        self.closed = True

    def calls_to(self, url: str, method: str = "GET") -> int:
        with self._lock:
            return sum(1 for call in self.calls if call.url == url and call.method == method)


def url(path: str) -> str:
    return ORIGIN + path


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def backend():
    return MemoryCacheBackend()


@pytest.fixture
def registry(backend):
    return CacheStoreRegistry(backend, version=VERSION)


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'queue.db'}")


@pytest.fixture
def platform():
    return Platform()


@pytest.fixture
def queue(session_factory, network, platform):
    return MutationQueue(session_factory, network, notify=platform.clients.post_message)


@pytest.fixture
def precache_paths():
    return ("/", "/offline.html", "/offline/coach.html", "/manifest.json")


@pytest.fixture
def make_worker(backend, network, session_factory, platform, precache_paths):
    """Factory for worker generations sharing storage, network and platform."""
    created = []

    def factory(version: str = VERSION, prewarm=()):
        worker = ServiceWorker(
            version=version,
            origin=ORIGIN,
            registry=CacheStoreRegistry(backend, version=version),
            network=network,
            queue=MutationQueue(session_factory, network, notify=platform.clients.post_message),
            platform=platform,
            precache=precache_paths,
            prewarm=prewarm,
        )
        created.append(worker)
        return worker

    yield factory
    for worker in created:
        worker.shutdown()


@pytest.fixture
def serve_shell(network, precache_paths):
    """Register upstream responses for every precached path."""
    for path in precache_paths:
        network.respond(url(path), body=f"<html>{path}</html>".encode(), headers={"Content-Type": "text/html"})
    return network

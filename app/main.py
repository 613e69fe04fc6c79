"""
Hockey Hub Offline Gateway - Main FastAPI Application
Every page request passes through the offline cache worker before reaching the backend
"""
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import sessionmaker

from app.cache import CACHE_STATUS_HEADER, FetchRequest, RequestsNetwork, SqliteCacheBackend
from app.db import create_session_factory
from app.schemas import NotificationClickRequest, SyncRequest
from app.worker import InstallError, Platform, Registration, build_service_worker
from config.settings import settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("gateway")

# Version tracking
APP_VERSION = "v1.0.0"
APP_NAME = "Hockey Hub Offline Gateway"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Release the worker and upstream session on shutdown."""
    yield
    shutdown_worker()


app = FastAPI(
    title=APP_NAME,
    description="Offline cache, fallback pages and mutation queue in front of the Hockey Hub backend",
    version=APP_VERSION,
    lifespan=lifespan,
)

# Headers recomputed by the server for the outgoing response
_DROPPED_RESPONSE_HEADERS = {"content-length", "transfer-encoding", "connection"}

# Seconds between install attempts while no generation is active
INSTALL_RETRY_SECONDS = 30.0

_registration: Optional[Registration] = None
_registration_lock = threading.Lock()
_network: Optional[RequestsNetwork] = None
_backend: Optional[SqliteCacheBackend] = None
_session_factory: Optional[sessionmaker] = None
_last_install_attempt: Optional[float] = None


def get_registration() -> Registration:
    """
    Get or create the global registration, installing the configured generation
    Used as a FastAPI dependency so tests can override it

    A failed install leaves the registration without an active worker; it is
    retried at most every INSTALL_RETRY_SECONDS
    """
    global _registration, _network, _backend, _session_factory
    with _registration_lock:
        if _registration is None:
            _network = RequestsNetwork(timeout=settings.network_timeout_seconds)
            _backend = SqliteCacheBackend(settings.cache_db_path)
            _session_factory = create_session_factory(settings.queue_database_url)
            _registration = Registration(Platform())
        if _registration.active is None and _install_due():
            _install(_registration)
        return _registration


def _install_due() -> bool:
    global _last_install_attempt
    now = time.monotonic()
    if _last_install_attempt is not None and now - _last_install_attempt < INSTALL_RETRY_SECONDS:
        return False
    _last_install_attempt = now
    return True


def _install(registration: Registration) -> None:
    worker = build_service_worker(
        settings,
        registration.platform,
        network=_network,
        backend=_backend,
        session_factory=_session_factory,
    )
    try:
        registration.register(worker)
    except InstallError as e:
        logger.error(f"Worker {settings.sw_version} not installed, serving without it: {e}")
        worker.shutdown()


def shutdown_worker():
    """Stop background tasks and release the upstream session."""
    with _registration_lock:
        if _registration is not None:
            for worker in (_registration.active, _registration.waiting):
                if worker is not None:
                    worker.shutdown()
        if _network is not None:
            _network.close()


def _active_worker(registration: Registration):
    if registration.active is None:
        raise HTTPException(status_code=503, detail="No active worker")
    return registration.active


@app.get("/health")
def health_check(registration: Registration = Depends(get_registration)):
    """Health check endpoint."""
    active = registration.active
    return {
        "status": "ok" if active is not None else "degraded",
        "worker": active.version if active else None,
        "state": active.state.value if active else None,
    }


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "worker_version": settings.sw_version,
        "full": f"{APP_NAME} {APP_VERSION} (worker {settings.sw_version})",
    }


@app.get("/sw/stats")
def worker_stats(registration: Registration = Depends(get_registration)):
    """Cache and queue statistics of the active worker."""
    worker = _active_worker(registration)
    return {
        "version": worker.version,
        "cache": worker.cache_manager.get_stats(),
        "partitions": worker.registry.get_stats(),
        "queued": worker.queue.count(),
        "pending_sync_tags": registration.platform.sync.pending(),
    }


@app.post("/sw/message")
def post_message(
    message: Any = Body(...),
    registration: Registration = Depends(get_registration),
):
    """
    Control channel. Messages are addressed to the waiting generation when one
    exists (skip-waiting), otherwise to the active one.
    """
    worker = registration.waiting or _active_worker(registration)
    reply = worker.handle_message(message)
    if reply is None:
        return Response(status_code=204)
    return reply


@app.post("/sw/sync")
def background_sync(body: SyncRequest, registration: Registration = Depends(get_registration)):
    """Deliver a background sync tag."""
    worker = _active_worker(registration)
    result = worker.handle_sync(body.tag)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Unknown sync tag: {body.tag}")
    return {"tag": body.tag, **result.to_dict()}


@app.post("/sw/online")
def connectivity_restored(registration: Registration = Depends(get_registration)):
    """Deliver every sync tag registered while offline."""
    worker = _active_worker(registration)
    delivered = {}
    for tag in registration.platform.sync.take():
        result = worker.handle_sync(tag)
        if result is not None:
            delivered[tag] = result.to_dict()
    return {"delivered": delivered}


@app.post("/sw/push")
async def push(request: Request, registration: Registration = Depends(get_registration)):
    """Deliver a push message; returns the notification shown."""
    worker = _active_worker(registration)
    payload = await request.body()
    notification = worker.handle_push(payload or None)
    return notification.to_dict()


@app.post("/sw/notification-click")
def notification_click(body: NotificationClickRequest, registration: Registration = Depends(get_registration)):
    """Deliver a notification click; returns the page focused or opened."""
    worker = _active_worker(registration)
    client = worker.handle_notification_click(body.notification_id, body.action)
    if client is None:
        return {"client": None}
    return {"client": {"id": client.id, "url": client.url, "focused": client.focused}}


@app.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def intercept(path: str, request: Request, registration: Registration = Depends(get_registration)):
    """Route a page request through the active worker to the upstream backend."""
    fetch_request = FetchRequest(
        url=_upstream_url(request),
        method=request.method,
        headers=dict(request.headers),
        body=(await request.body()) or None,
        destination=request.headers.get("sec-fetch-dest", ""),
        mode=request.headers.get("sec-fetch-mode", ""),
    )
    response = await run_in_threadpool(registration.handle_fetch, fetch_request)
    if response is None:
        return JSONResponse(status_code=503, content={"error": "not intercepted"})

    headers: Dict[str, str] = {
        name: value for name, value in response.headers.items()
        if name.lower() not in _DROPPED_RESPONSE_HEADERS
    }
    if CACHE_STATUS_HEADER in response.headers:
        logger.debug(f"{request.method} /{path} served with {CACHE_STATUS_HEADER}={response.cache_status}")
    return Response(content=response.body, status_code=response.status, headers=headers)


def _upstream_url(request: Request) -> str:
    url = settings.upstream_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url

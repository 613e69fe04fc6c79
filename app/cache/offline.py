"""
Offline fallbacks: role-specific offline pages, the offline JSON envelope,
and placeholder responses for assets that cannot be fetched.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from .core import CACHE_STATUS_HEADER, CacheCategory, CachedResponse, FetchRequest

logger = logging.getLogger("cache.offline")


OFFLINE_MESSAGE = "You are currently offline. This data will be synced when you reconnect."

GENERIC_OFFLINE_PAGE = "/offline.html"

# First path segment -> role offline page
ROLE_OFFLINE_PAGES: Dict[str, str] = {
    role: f"/offline/{role}.html"
    for role in (
        "player",
        "coach",
        "parent",
        "medical-staff",
        "equipment-manager",
        "physical-trainer",
        "club-admin",
        "admin",
    )
}

OFFLINE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Offline - Hockey Hub</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; padding: 40px; text-align: center; background: #f0f2f5;">
    <div style="background: white; max-width: 500px; margin: 40px auto; padding: 40px; border-radius: 12px; box-shadow: 0 2px 8px rgba(0,0,0,0.1);">
        <h1 style="color: #1e3a5f; margin-bottom: 20px;">You're offline</h1>
        <p style="color: #7f8c8d; margin-bottom: 30px;">Check your connection. Changes you make will sync when you reconnect.</p>
        <button onclick="window.location.reload()" style="background: #3498db; color: white; border: none; padding: 12px 24px; border-radius: 6px; font-size: 16px; cursor: pointer;">Try Again</button>
    </div>
</body>
</html>
"""

IMAGE_PLACEHOLDER_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="200" height="200" viewBox="0 0 200 200">'
    '<rect width="200" height="200" fill="#e0e0e0"/>'
    '<text x="50%" y="50%" dominant-baseline="middle" text-anchor="middle" '
    'fill="#9e9e9e" font-family="sans-serif" font-size="14">Offline</text>'
    "</svg>"
)


def role_for_path(path: str) -> Optional[str]:
    """Role named by the first path segment, if it is a known role."""
    segment = path.lstrip("/").split("/", 1)[0].lower()
    return segment if segment in ROLE_OFFLINE_PAGES else None


def offline_page_for_path(path: str) -> str:
    role = role_for_path(path)
    return ROLE_OFFLINE_PAGES[role] if role else GENERIC_OFFLINE_PAGE


def offline_json_response() -> CachedResponse:
    """503 envelope returned when an API read has neither network nor cache."""
    payload = {
        "error": "offline",
        "message": OFFLINE_MESSAGE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return CachedResponse(
        status=503,
        body=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", CACHE_STATUS_HEADER: "offline"},
    )


def static_offline_response() -> CachedResponse:
    return CachedResponse(
        status=503,
        body=b"Offline",
        headers={"Content-Type": "text/plain", CACHE_STATUS_HEADER: "offline"},
    )


def image_placeholder_response() -> CachedResponse:
    return CachedResponse(
        status=200,
        body=IMAGE_PLACEHOLDER_SVG.encode("utf-8"),
        headers={"Content-Type": "image/svg+xml", CACHE_STATUS_HEADER: "placeholder"},
    )


def offline_document_response() -> CachedResponse:
    return CachedResponse(
        status=503,
        body=OFFLINE_HTML.encode("utf-8"),
        headers={"Content-Type": "text/html; charset=utf-8", CACHE_STATUS_HEADER: "offline"},
    )


class OfflineFallbackRouter:
    """
    Picks the offline page for a failed navigation.

    Offline pages are read from the static partition, where install puts them;
    when missing, a self-contained document is synthesized.
    """

    def __init__(self, registry):
        self._registry = registry

    def route_offline(self, request: FetchRequest) -> CachedResponse:
        """Never raises."""
        page = offline_page_for_path(request.path)
        try:
            static = self._registry.open(CacheCategory.STATIC)
            for candidate in (page, GENERIC_OFFLINE_PAGE):
                entry = static.match(FetchRequest(url=self._join(request, candidate)))
                if entry is not None:
                    logger.debug(f"Serving offline page {candidate} for {request.path}")
                    return entry.response
        except Exception as e:
            logger.warning(f"Offline page lookup failed for {request.url}: {e}")
        return offline_document_response()

    @staticmethod
    def _join(request: FetchRequest, path: str) -> str:
        """Absolute URL of `path` on the request's origin."""
        parts = urlsplit(request.url)
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

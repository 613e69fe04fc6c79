"""
Core cache data structures.
"""
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict


CACHE_STATUS_HEADER = "X-SW-Cache"


class CacheCategory(Enum):
    """Logical resource categories, one partition each per generation."""
    STATIC = "static"         # App shell, scripts, styles, offline pages
    DYNAMIC = "dynamic"       # HTML documents
    API = "api"               # Generic REST reads
    IMAGES = "images"
    WORKOUTS = "workouts"     # Single workout/session by id, mutable
    TEMPLATES = "templates"   # Single template/equipment item by id, stable


class Strategy(Enum):
    """Retrieval strategies a request can be routed to."""
    NETWORK_FIRST = "network_first"                   # API, stale cache fallback
    CACHE_FIRST = "cache_first"                       # Stale-while-revalidate
    NETWORK_FIRST_OFFLINE = "network_first_offline"   # Documents, offline page
    MUTATION = "mutation"                             # Non-GET, never cached


class NetworkError(Exception):
    """The network could not produce a response (offline, DNS, timeout)."""


class StorageError(Exception):
    """A cache or queue storage operation failed."""


@dataclass
class FetchRequest:
    """
    An intercepted page request.

    `destination` and `mode` mirror the browser's request destination
    ("image", "document", ...) and mode ("navigate", "cors", ...).
    """
    url: str
    method: str = "GET"
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: Optional[bytes] = None
    destination: str = ""
    mode: str = ""

    def __post_init__(self):
        self.method = self.method.upper()
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme.lower()

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def cache_key(self) -> str:
        """Request identity inside a partition."""
        return f"{self.method} {self.url}"

    def accepts(self, mime_type: str) -> bool:
        return mime_type in self.headers.get("Accept", "")

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"


@dataclass
class CachedResponse:
    """
    A response snapshot, either fresh from the network or read from a partition.
    """
    status: int
    body: bytes = b""
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    url: str = ""

    def __post_init__(self):
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)

    def clone(self) -> "CachedResponse":
        return CachedResponse(
            status=self.status,
            body=self.body,
            headers=CaseInsensitiveDict(self.headers),
            url=self.url,
        )

    def with_header(self, name: str, value: str) -> "CachedResponse":
        """Copy of this response with one header set."""
        copy = self.clone()
        copy.headers[name] = value
        return copy

    @property
    def cache_status(self) -> Optional[str]:
        return self.headers.get(CACHE_STATUS_HEADER)


@dataclass
class CacheEntry:
    """
    One stored response inside a partition.
    """
    key: str
    response: CachedResponse
    stored_at: float = field(default_factory=time.time)

    def age_seconds(self, now: Optional[float] = None) -> float:
        """Seconds since the entry was written."""
        return (now if now is not None else time.time()) - self.stored_at

    def is_expired(self, max_age_seconds: int, now: Optional[float] = None) -> bool:
        return self.age_seconds(now) >= max_age_seconds


@dataclass
class Classification:
    """Result of routing a request: which partition and which strategy."""
    strategy: Strategy
    category: Optional[CacheCategory] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "strategy": self.strategy.value,
            "category": self.category.value if self.category else None,
        }

"""
Network access for strategies and queue replay.
"""
import logging
from typing import Protocol

import requests

from .core import CachedResponse, FetchRequest, NetworkError

logger = logging.getLogger("cache.network")

# Hop-by-hop and encoding headers that must not be replayed or stored verbatim
_SKIPPED_RESPONSE_HEADERS = {
    "connection", "keep-alive", "transfer-encoding", "content-encoding", "content-length",
}
_SKIPPED_REQUEST_HEADERS = {"host", "connection", "content-length"}


class Network(Protocol):
    """
    Anything that can turn a request into a response.

    fetch() returns non-2xx responses normally; it raises NetworkError only
    when no response could be obtained.
    """

    def fetch(self, request: FetchRequest) -> CachedResponse:
        ...


class RequestsNetwork:
    """Network implementation backed by a requests session."""

    def __init__(self, timeout: float = 10.0, session: requests.Session = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, request: FetchRequest) -> CachedResponse:
        headers = {
            name: value for name, value in request.headers.items()
            if name.lower() not in _SKIPPED_REQUEST_HEADERS
        }
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=headers,
                data=request.body,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            logger.debug(f"Network failure for {request.method} {request.url}: {e}")
            raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

        return CachedResponse(
            status=response.status_code,
            body=response.content,
            headers={
                name: value for name, value in response.headers.items()
                if name.lower() not in _SKIPPED_RESPONSE_HEADERS
            },
            url=request.url,
        )

    def close(self) -> None:
        self._session.close()

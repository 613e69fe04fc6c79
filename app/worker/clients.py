"""
Platform surfaces the worker talks to: open pages, notifications, background sync.

These are in-process stand-ins for what a browser provides, so the worker's
event handling can run inside the gateway and under test.
"""
import itertools
import threading
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("worker.clients")


@dataclass
class Client:
    """One open page."""
    id: int
    url: str
    focused: bool = False
    controller: Optional[str] = None  # Version of the controlling worker
    messages: List[Dict[str, Any]] = field(default_factory=list)


class ClientRegistry:
    """Open pages under the worker's scope."""

    def __init__(self):
        self._clients: Dict[int, Client] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, url: str, controller: Optional[str] = None) -> Client:
        with self._lock:
            client = Client(id=next(self._ids), url=url, controller=controller)
            self._clients[client.id] = client
            return client

    def remove(self, client_id: int) -> None:
        with self._lock:
            self._clients.pop(client_id, None)

    def match_all(self) -> List[Client]:
        with self._lock:
            return list(self._clients.values())

    def controlled_by(self, version: str) -> List[Client]:
        return [client for client in self.match_all() if client.controller == version]

    def claim(self, version: str) -> int:
        """Make `version` the controller of every open page."""
        clients = self.match_all()
        for client in clients:
            client.controller = version
        logger.info(f"Worker {version} claimed {len(clients)} pages")
        return len(clients)

    def focus(self, client: Client) -> Client:
        with self._lock:
            for other in self._clients.values():
                other.focused = other.id == client.id
        return client

    def open_window(self, url: str, controller: Optional[str] = None) -> Client:
        client = self.add(url, controller=controller)
        logger.info(f"Opened page {url}")
        return self.focus(client)

    def post_message(self, message: Dict[str, Any]) -> int:
        """Deliver a message to every open page."""
        clients = self.match_all()
        for client in clients:
            client.messages.append(message)
        return len(clients)


@dataclass
class Notification:
    id: int
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    icon: str = "/icons/icon-192x192.png"
    badge: str = "/icons/badge-72x72.png"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "actions": self.actions,
            "icon": self.icon,
            "badge": self.badge,
        }


class NotificationCenter:
    """Notifications shown by the worker, until clicked or closed."""

    def __init__(self):
        self._shown: Dict[int, Notification] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def show(self, title: str, body: str, data: Optional[Dict[str, Any]] = None,
             actions: Optional[List[Dict[str, Any]]] = None) -> Notification:
        with self._lock:
            notification = Notification(
                id=next(self._ids),
                title=title,
                body=body,
                data=data or {},
                actions=actions or [],
            )
            self._shown[notification.id] = notification
        logger.info(f"Notification shown: {title}")
        return notification

    def get(self, notification_id: int) -> Optional[Notification]:
        with self._lock:
            return self._shown.get(notification_id)

    def close(self, notification_id: int) -> Optional[Notification]:
        with self._lock:
            return self._shown.pop(notification_id, None)

    def all(self) -> List[Notification]:
        with self._lock:
            return list(self._shown.values())


class SyncRegistry:
    """Background sync tags registered and not yet delivered."""

    def __init__(self):
        self._tags: List[str] = []
        self._lock = threading.Lock()

    def register(self, tag: str) -> None:
        with self._lock:
            if tag not in self._tags:
                self._tags.append(tag)

    def take(self) -> List[str]:
        """Remove and return all pending tags."""
        with self._lock:
            tags, self._tags = self._tags, []
            return tags

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._tags)


@dataclass
class Platform:
    """Everything outside the worker that its handlers reach for."""
    clients: ClientRegistry = field(default_factory=ClientRegistry)
    notifications: NotificationCenter = field(default_factory=NotificationCenter)
    sync: SyncRegistry = field(default_factory=SyncRegistry)

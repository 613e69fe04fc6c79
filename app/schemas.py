"""
Pydantic schemas for control messages, push payloads and gateway request bodies
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional


# ===== CONTROL CHANNEL =====

MessageType = Literal[
    "skip-waiting",
    "clear-cache",
    "cache-urls",
    "invalidate-urls",
    "get-status",
    "sync-now",
]


class ControlMessage(BaseModel):
    """Envelope posted by a foreground page"""
    type: MessageType
    data: Optional[Dict[str, Any]] = None


class CacheUrlsData(BaseModel):
    """Payload of a cache-urls message"""
    urls: List[str] = Field(min_length=1)
    cacheName: Optional[str] = None


class InvalidateUrlsData(BaseModel):
    """Payload of an invalidate-urls message"""
    urls: List[str] = Field(min_length=1)


# ===== PUSH & NOTIFICATIONS =====

class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class PushData(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None


class PushPayload(BaseModel):
    """JSON body of an incoming push message"""
    title: Optional[str] = None
    body: Optional[str] = None
    data: Optional[PushData] = None
    actions: List[NotificationAction] = Field(default_factory=list)


# ===== GATEWAY REQUEST BODIES =====

class SyncRequest(BaseModel):
    tag: str


class NotificationClickRequest(BaseModel):
    notification_id: int
    action: Optional[str] = None

"""
Webhook audit log: bounded, newest-first history of inbound webhooks for
operator debugging.

Not a durability guarantee. Entries may be lost on restart or evicted by the
cap, and ``record`` never raises into the webhook request.
"""
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4
import json
import logging

import redis
from fastapi import Request

from invoicepay.core.config import settings
from invoicepay.core.redis import get_redis_client

logger = logging.getLogger(__name__)

STATUS_RECEIVED = "received"
STATUS_PROCESSED = "processed"
STATUS_ERROR = "error"


@dataclass
class AuditEntry:
    id: str
    type: str
    rail: str
    status: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    invoice_id: Optional[str] = None
    merchant_id: Optional[str] = None
    message: Optional[str] = None
    data: Any = None

    @classmethod
    def build(cls, rail: str, event_type: Optional[str], status: str, payload: Any = None,
              invoice_id=None, merchant_id=None, message: Optional[str] = None) -> "AuditEntry":
        return cls(
            id=_event_id(payload),
            type=event_type or "unknown",
            rail=rail,
            status=status,
            invoice_id=str(invoice_id) if invoice_id is not None else None,
            merchant_id=str(merchant_id) if merchant_id is not None else None,
            message=message,
            data=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _event_id(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("event_id", "id"):
            value = payload.get(key)
            if value:
                return str(value)
    return uuid4().hex


class InMemoryAuditStore:
    """Process-local ring buffer."""

    def __init__(self, capacity: int):
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=capacity)
        self._lock = Lock()

    def push(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._entries.appendleft(entry)

    def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisAuditStore:
    """Capped Redis list shared by every API worker."""

    def __init__(self, client: redis.Redis, key: str, capacity: int, ttl_seconds: int):
        self.client = client
        self.key = key
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds

    def push(self, entry: Dict[str, Any]) -> None:
        pipe = self.client.pipeline()
        pipe.lpush(self.key, json.dumps(entry, default=str))
        pipe.ltrim(self.key, 0, self.capacity - 1)
        pipe.expire(self.key, self.ttl_seconds)
        pipe.execute()

    def all(self) -> List[Dict[str, Any]]:
        entries = []
        for raw in self.client.lrange(self.key, 0, self.capacity - 1):
            try:
                entries.append(json.loads(raw))
            except ValueError:
                logger.warning(f"Skipping unreadable webhook audit entry in {self.key}")
        return entries

    def clear(self) -> None:
        self.client.delete(self.key)


class WebhookAuditLog:
    def __init__(self, store):
        self.store = store

    def record(self, entry: AuditEntry) -> None:
        try:
            self.store.push(entry.to_dict())
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.error(f"Failed to record webhook audit entry {entry.id} ({entry.type}): {str(e)}")

    def list_recent(self, merchant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        entries = self.store.all()
        if merchant_id is None:
            return entries
        merchant_id = str(merchant_id)
        return [e for e in entries if e.get("merchant_id") == merchant_id]

    def clear(self) -> None:
        self.store.clear()
        logger.info("Webhook audit log cleared")


def build_audit_log() -> WebhookAuditLog:
    """Constructed once at startup and kept on ``app.state``."""
    if settings.WEBHOOK_AUDIT_BACKEND == "memory":
        store = InMemoryAuditStore(settings.WEBHOOK_AUDIT_CAPACITY)
    else:
        store = RedisAuditStore(
            get_redis_client(),
            key=settings.WEBHOOK_AUDIT_KEY,
            capacity=settings.WEBHOOK_AUDIT_CAPACITY,
            ttl_seconds=settings.WEBHOOK_AUDIT_TTL_SECONDS,
        )
    return WebhookAuditLog(store)


def get_webhook_audit_log(request: Request) -> WebhookAuditLog:
    return request.app.state.webhook_audit_log

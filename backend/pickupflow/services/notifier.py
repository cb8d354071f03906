"""Tenant-scoped change notifications for lifecycle transitions."""
from __future__ import annotations

from collections import defaultdict, deque
from functools import lru_cache
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional, Protocol

from pickupflow.core.config import get_settings
from pickupflow.core.logging import logger
from pickupflow.models.lifecycle import ChangeEvent, EntityType

Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed(Protocol):
    def publish(self, event: ChangeEvent) -> None:
        ...


class BroadcastChangeFeed:
    """In-process fan-out keyed by tenant with a bounded backlog per tenant."""

    def __init__(self, backlog: int | None = None) -> None:
        self._backlog_size = backlog or get_settings().change_feed_backlog
        self._lock = Lock()
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._backlog: Dict[str, Deque[ChangeEvent]] = defaultdict(lambda: deque(maxlen=self._backlog_size))

    def subscribe(self, tenant_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for one tenant; returns an unsubscribe function."""
        with self._lock:
            self._subscribers[tenant_id].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers.get(tenant_id, []):
                    self._subscribers[tenant_id].remove(callback)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            self._backlog[event.tenant_id].append(event)
            subscribers = list(self._subscribers.get(event.tenant_id, []))
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning(
                    "Change subscriber failed",
                    tenant_id=event.tenant_id,
                    entity_id=event.entity_id,
                    error=str(exc),
                )

    def recent(self, tenant_id: str, limit: int = 50) -> List[ChangeEvent]:
        with self._lock:
            items = list(self._backlog.get(tenant_id, ()))
        return list(reversed(items))[: max(1, limit)]


class ChangeNotifier:
    """Publishes transitions; delivery is best effort and never fails a transition."""

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self._feed = feed

    def publish(self, entity_type: EntityType, entity_id: str, tenant_id: str, status: str) -> Optional[ChangeEvent]:
        if self._feed is None:
            return None
        event = ChangeEvent(entity_type=entity_type, entity_id=entity_id, tenant_id=tenant_id, status=status)
        try:
            self._feed.publish(event)
        except Exception as exc:
            logger.warning(
                "Change notification dropped",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                entity_id=entity_id,
                error=str(exc),
            )
            return None
        return event


@lru_cache()
def get_change_feed() -> BroadcastChangeFeed:
    """Process-wide feed shared by the engine and the polling endpoint."""
    return BroadcastChangeFeed()

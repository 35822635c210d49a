from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from authgate.logging import get_logger
from authgate.storage.models import utcnow

logger = get_logger(__name__)

LOGOUT_EVENT = "logout"


@dataclass(frozen=True)
class AuthEvent:
    type: str
    group: str
    origin_tab: Optional[str] = None
    issued_at: datetime = field(default_factory=utcnow)

    def to_message(self, redirect: Optional[str] = None) -> dict:
        message = {"type": self.type}
        if redirect:
            message["redirect"] = redirect
        return message


class Subscription:
    """One tab's mailbox on a client group."""

    def __init__(self, group: str, tab_id: str, max_pending: int) -> None:
        self.group = group
        self.tab_id = tab_id
        self.queue: asyncio.Queue[AuthEvent] = asyncio.Queue(maxsize=max_pending)
        try:
            self.loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self.loop = None
        self.closed = False

    def offer(self, event: AuthEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("auth_event_dropped", group=self.group, tab_id=self.tab_id)
            return False
        return True

    def poll(self) -> Optional[AuthEvent]:
        """Return a pending event without waiting."""
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def next_event(self) -> AuthEvent:
        return await self.queue.get()


class LogoutCoordinator:
    """Fan-out of auth events to the open tabs of one client group.

    A group is a session id: tabs of one browser share the session cookie,
    so they share the group. Delivery is best-effort and at-most-once per
    tab; publishing never waits on a subscriber.
    """

    def __init__(self, *, max_pending: int = 8) -> None:
        self.max_pending = max_pending
        self._groups: Dict[str, Dict[str, Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, group: str, tab_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(group, tab_id or str(uuid.uuid4()), self.max_pending)
        with self._lock:
            self._groups.setdefault(group, {})[subscription.tab_id] = subscription
        logger.debug("auth_events_subscribed", group_size=self.subscriber_count(group))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            tabs = self._groups.get(subscription.group)
            if tabs is not None and tabs.get(subscription.tab_id) is subscription:
                del tabs[subscription.tab_id]
                if not tabs:
                    del self._groups[subscription.group]
        subscription.closed = True

    def subscriber_count(self, group: str) -> int:
        with self._lock:
            return len(self._groups.get(group, {}))

    def publish(self, event: AuthEvent) -> int:
        """Offer ``event`` to every tab in its group except the origin.

        Returns how many tabs were handed the event.
        """
        with self._lock:
            targets = [
                sub
                for tab_id, sub in self._groups.get(event.group, {}).items()
                if tab_id != event.origin_tab
            ]
        try:
            current_loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None
        delivered = 0
        for sub in targets:
            if sub.loop is not None and sub.loop is not current_loop and not sub.loop.is_closed():
                # subscriber lives on another loop; hand over thread-safely
                sub.loop.call_soon_threadsafe(sub.offer, event)
                delivered += 1
            elif sub.offer(event):
                delivered += 1
        logger.info("auth_event_published", event_type=event.type, delivered=delivered)
        return delivered

    def publish_logout(self, group: str, *, origin_tab: Optional[str] = None) -> int:
        return self.publish(AuthEvent(LOGOUT_EVENT, group, origin_tab))

    def close(self) -> None:
        with self._lock:
            subscriptions = [sub for tabs in self._groups.values() for sub in tabs.values()]
            self._groups.clear()
        for sub in subscriptions:
            sub.closed = True


__all__ = ["AuthEvent", "LOGOUT_EVENT", "LogoutCoordinator", "Subscription"]

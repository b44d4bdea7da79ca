"""
Change bus -- path-level diffs pushed to whoever is watching the store.

Front-ends subscribe with a glob over logical paths and receive each
ChangeEvent as it is published, or poll the recent history instead.
The bus lives in-process; events carry paths and change kinds only,
never secret material.

Usage:
    bus = ChangeBus()
    sub = bus.subscribe(on_change)              # everything
    bus.subscribe(refresh_mail, "email/*")      # one folder
    bus.publish([Change(path="email/work", kind=ChangeKind.MODIFIED)])
    events = bus.poll(since=last_seen)
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from .models import Change

logger = logging.getLogger("skpass.events")


class ChangeEvent(BaseModel):
    """One published batch of changes."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    sequence: int = 0
    origin: str = "local"
    changes: list[Change] = Field(default_factory=list)
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def paths(self) -> list[str]:
        result: list[str] = []
        for change in self.changes:
            result.append(change.path)
            if change.old_path:
                result.append(change.old_path)
        return result


class Subscription(BaseModel):
    """A subscriber's registration on the bus."""

    subscription_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    pattern: str = Field(default="*", description="Glob over logical paths (e.g. 'email/*')")
    subscribed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivered: int = 0


class ChangeBus:
    """In-process publish/subscribe for store changes.

    Args:
        history_size: How many events poll() can look back over.
    """

    def __init__(self, history_size: int = 256) -> None:
        self._lock = threading.Lock()
        self._subs: dict[str, tuple[Subscription, Callable[[ChangeEvent], None]]] = {}
        self._history: deque[ChangeEvent] = deque(maxlen=history_size)
        self._sequence = 0

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        pattern: str = "*",
    ) -> Subscription:
        """Register a callback for events touching paths matching ``pattern``."""
        sub = Subscription(pattern=pattern)
        with self._lock:
            self._subs[sub.subscription_id] = (sub, callback)
        logger.debug("Subscribed %s to '%s'", sub.subscription_id, pattern)
        return sub

    def unsubscribe(self, subscription: Subscription | str) -> bool:
        sub_id = subscription if isinstance(subscription, str) else subscription.subscription_id
        with self._lock:
            return self._subs.pop(sub_id, None) is not None

    def publish(self, changes: list[Change], origin: str = "local") -> Optional[ChangeEvent]:
        """Record and dispatch a batch of changes.

        Callbacks run on the publishing thread; a failing callback is
        logged and does not stop delivery to the others.

        Returns:
            The published event, or None for an empty batch.
        """
        if not changes:
            return None

        with self._lock:
            self._sequence += 1
            event = ChangeEvent(sequence=self._sequence, origin=origin, changes=changes)
            self._history.append(event)
            targets = list(self._subs.values())

        paths = event.paths()
        for sub, callback in targets:
            if not any(_matches(p, sub.pattern) for p in paths):
                continue
            try:
                callback(event)
                sub.delivered += 1
            except Exception as exc:
                logger.error(
                    "Subscriber %s failed on event %s: %s",
                    sub.subscription_id, event.event_id, exc,
                )

        logger.debug("Published event %d (%d changes)", event.sequence, len(changes))
        return event

    def poll(
        self,
        since: Optional[int] = None,
        pattern: str = "*",
        limit: int = 100,
    ) -> list[ChangeEvent]:
        """Events after sequence number ``since``, oldest first."""
        with self._lock:
            events = list(self._history)
        selected = [
            e for e in events
            if (since is None or e.sequence > since)
            and any(_matches(p, pattern) for p in e.paths())
        ]
        return selected[:limit]

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._sequence

    def status(self) -> dict:
        with self._lock:
            return {
                "subscriptions": len(self._subs),
                "events": len(self._history),
                "last_sequence": self._sequence,
            }


def _matches(path: str, pattern: str) -> bool:
    """Glob match where a folder pattern also covers everything below it."""
    if pattern in ("*", ""):
        return True
    return fnmatch.fnmatchcase(path, pattern) or path.startswith(pattern.rstrip("/") + "/")

"""Fire-and-forget event broadcast.

Producers call ``emit(event, payload)`` and never wait for, or learn about,
delivery. Delivery is at-most-once: a full buffer drops events according to
its drop policy and a failing subscriber only loses its own copy.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class DropPolicy(Enum):
    """What to do when the buffer is full."""

    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


@dataclass(frozen=True)
class BroadcastEvent:
    event: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BroadcastSink(ABC):
    @abstractmethod
    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Publish an event. Must not raise and must not block."""


class NullBroadcastSink(BroadcastSink):
    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        return None


# ---------------------------------------------------------------------------
# Buffered sink
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BufferedSinkConfig:
    """Configuration for the buffered broadcast sink.

    Parameters
    ----------
    max_size:
        Maximum buffered events. Default 1000.
    drop_policy:
        Behavior when full. Default DROP_OLDEST, so dashboards see the
        newest status.
    """

    max_size: int = 1000
    drop_policy: DropPolicy = DropPolicy.DROP_OLDEST


@dataclass
class SinkStats:
    emitted: int = 0
    dropped: int = 0
    subscriber_errors: int = 0


class BufferedBroadcastSink(BroadcastSink):
    """Bounded in-memory buffer with optional synchronous subscribers.

    Consumers either ``drain()`` the buffer or register a subscriber that
    is called on every emit.
    """

    def __init__(self, config: BufferedSinkConfig | None = None) -> None:
        self._config = config or BufferedSinkConfig()
        self._items: deque[BroadcastEvent] = deque()
        self._subscribers: List[Callable[[BroadcastEvent], None]] = []
        self.stats = SinkStats()

    def subscribe(self, callback: Callable[[BroadcastEvent], None]) -> None:
        self._subscribers.append(callback)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        item = BroadcastEvent(event=event, payload=dict(payload))
        if len(self._items) >= self._config.max_size:
            self.stats.dropped += 1
            if self._config.drop_policy == DropPolicy.DROP_NEWEST:
                return
            self._items.popleft()
        self._items.append(item)
        self.stats.emitted += 1
        for callback in list(self._subscribers):
            try:
                callback(item)
            except Exception:
                self.stats.subscriber_errors += 1
                LOGGER.warning("broadcast subscriber failed for %s", event, exc_info=True)

    def drain(self) -> List[BroadcastEvent]:
        items = list(self._items)
        self._items.clear()
        return items

    def latest(self, event: str) -> Optional[BroadcastEvent]:
        for item in reversed(self._items):
            if item.event == event:
                return item
        return None

    def __len__(self) -> int:
        return len(self._items)

"""
Pipeline events for Listing Alerts.

Reconciliation publishes property events to an in-process queue; the
pipeline drains it and routes each event to the match index and the
alert scheduler.
"""

import queue
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from .models import utcnow

logger = logging.getLogger(__name__)


class PropertyEventKind(str, Enum):
    """What happened to a property during reconciliation."""
    CREATED = "created"
    UPDATED = "updated"                       # Minor change (e.g. description edit)
    SIGNIFICANT_CHANGE = "significant_changed"  # Price, status, bedrooms or bathrooms

    @property
    def triggers_alerts(self) -> bool:
        return self in (PropertyEventKind.CREATED, PropertyEventKind.SIGNIFICANT_CHANGE)


@dataclass
class PropertyEvent:
    """A property was created or changed in the store."""
    kind: PropertyEventKind
    property_id: str
    feed_id: str
    revision: int
    changed_fields: list[str] = field(default_factory=list)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class ProfileEvent:
    """A client's preference profile changed in the preference store."""
    client_id: str
    revision: int
    occurred_at: datetime = field(default_factory=utcnow)


PipelineEvent = Union[PropertyEvent, ProfileEvent]


class EventBus:
    """
    Thread-safe FIFO of pipeline events.

    Producers publish from any worker; a single consumer drains the queue
    and routes events to the match index and alert scheduler.
    """

    def __init__(self):
        self._queue: "queue.Queue[PipelineEvent]" = queue.Queue()

    def publish(self, event: PipelineEvent) -> None:
        logger.debug(f"Published {type(event).__name__}: {event}")
        self._queue.put(event)

    def get(self) -> Optional[PipelineEvent]:
        """Remove and return the oldest event, or None if the queue is empty."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[PipelineEvent]:
        """Remove and return every event currently queued, oldest first."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def __len__(self) -> int:
        return self._queue.qsize()

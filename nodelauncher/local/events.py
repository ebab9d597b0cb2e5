"""
Typed state-change messages and the broadcast bus that carries them.

The download coordinator and the process supervisor publish onto an EventBus;
the console (or any other front end) subscribes. Subscribers are called
synchronously on the event loop thread and must not block.
"""

import math
import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, ClassVar, Dict, List, Optional

log = logging.getLogger(__name__)


def finite_number(value: Any) -> float:
    """Collapses NaN, infinities and non-numbers to 0 so snapshots serialise cleanly."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return value


@dataclass
class Event:
    type: ClassVar[str] = "event"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        return data


@dataclass
class DownloadStarted(Event):
    type: ClassVar[str] = "download-started"
    chain_id: str


@dataclass
class DownloadsUpdate(Event):
    """Snapshot of every active and paused download."""
    type: ClassVar[str] = "downloads-update"
    downloads: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DownloadComplete(Event):
    type: ClassVar[str] = "download-complete"
    chain_id: str


@dataclass
class DownloadError(Event):
    type: ClassVar[str] = "download-error"
    chain_id: str
    error: str


@dataclass
class ChainStatusUpdate(Event):
    type: ClassVar[str] = "chain-status-update"
    chain_id: str
    status: str
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    error: Optional[str] = None
    unexpected: bool = False


@dataclass
class ChainOutput(Event):
    type: ClassVar[str] = "chain-output"
    chain_id: str
    stream: str
    data: str


@dataclass
class ChainSyncStatus(Event):
    """Initial block download progress of a running chain."""
    type: ClassVar[str] = "chain-sync-status"
    chain_id: str
    in_progress: bool
    percent: float = 0.0
    current_block: int = 0
    total_blocks: int = 0


Subscriber = Callable[[Event], None]


class EventBus:
    """Fan-out of events to every subscriber, in subscription order."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Registers a subscriber.

        :param callback: Called with every published event.
        :return: A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, event: Event) -> None:
        """Delivers an event. A failing subscriber is logged and does not stop delivery."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.error(f"Event subscriber {callback!r} failed on '{event.type}': {e}", exc_info=True)

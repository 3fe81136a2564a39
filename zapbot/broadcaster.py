import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

from .models import LogLevel
from .utils import json_log


OBSERVER_QUEUE_SIZE = 500


class EventBroadcaster:
    """
    Fan-out of dashboard events to every connected observer.

    Each observer owns a bounded asyncio.Queue it drains at its own pace.
    publish() never suspends; events are not buffered for observers that
    connect later.
    """

    def __init__(self, queue_size: int = OBSERVER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._observers: List[asyncio.Queue] = []

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def subscribe(self) -> Tuple[asyncio.Queue, Callable[[], None]]:
        """Register an observer. Returns its queue and an unsubscribe function."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._observers.append(queue)

        def _unsubscribe() -> None:
            try:
                self._observers.remove(queue)
            except ValueError:
                pass

        return queue, _unsubscribe

    def publish(self, event: str, payload: Any) -> None:
        message = {"event": event, "data": payload}
        for queue in list(self._observers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                json_log("broadcast_dropped", event_name=event, reason="observer_queue_full")

    def log(self, level: LogLevel, message: str, **fields) -> Dict[str, Any]:
        """Publish a user-visible `log` event and mirror it to the process log."""
        entry = {
            "level": LogLevel(level).value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        json_log("dashboard_log", level=entry["level"], message=message, **fields)
        self.publish("log", entry)
        return entry

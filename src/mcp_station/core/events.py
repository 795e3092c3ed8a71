"""
Push-based notification fan-out.

Installer output, process output, warnings and exit notifications are
published as PackageEvent instances; the CLI (or any other shell)
subscribes to render them.
"""

from typing import Callable, List, Optional

from mcp_station.core.models import EventKind, PackageEvent
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[PackageEvent], None]


class EventBus:
    """Synchronous publish/subscribe channel for package events."""

    def __init__(self):
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        """Remove all subscribers."""
        self._subscribers.clear()

    def publish(self, event: PackageEvent) -> None:
        """Deliver an event to every subscriber."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # A broken observer must not break the operation that emitted the event
                logger.exception(
                    f"Event subscriber failed for {event.kind.value} event",
                    extra={"package_id": event.mcp_id},
                )

    def output(self, package_id: str, data: str) -> None:
        self.publish(PackageEvent(kind=EventKind.OUTPUT, mcp_id=package_id, data=data))

    def warning(self, package_id: str, data: str) -> None:
        logger.warning(data, extra={"package_id": package_id})
        self.publish(PackageEvent(kind=EventKind.WARNING, mcp_id=package_id, data=data))

    def error(self, package_id: str, data: str) -> None:
        self.publish(PackageEvent(kind=EventKind.ERROR, mcp_id=package_id, data=data))

    def stopped(self, package_id: str, code: Optional[int]) -> None:
        self.publish(PackageEvent(kind=EventKind.STOPPED, mcp_id=package_id, code=code))

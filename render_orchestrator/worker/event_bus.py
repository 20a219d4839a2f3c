"""In-process publish/subscribe channel for job events.

The supervisor publishes every JobEvent here; the GUI shell and the remote
relay subscribe. A failing subscriber is logged and skipped so it cannot
disturb the supervisor or other subscribers.
"""

import logging
from typing import Callable, Optional

from render_orchestrator.protocol import JobEvent

Subscriber = Callable[[JobEvent], None]

# Subscribe to this to receive every event type
ALL_EVENTS = "*"


class EventBus:
    """Synchronous fan-out of JobEvents to subscribers.

    Subscribers run on the caller's thread (the supervisor's event loop) in
    subscription order.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(
        self, handler: Subscriber, event_type: str = ALL_EVENTS
    ) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``.

        Args:
            handler: Callable receiving each matching JobEvent.
            event_type: Event type to receive, or ALL_EVENTS.

        Returns:
            Function that removes the subscription.
        """
        handlers = self._subscribers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe():
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: JobEvent) -> None:
        """Deliver ``event`` to subscribers of its type and of ALL_EVENTS."""
        targets = list(self._subscribers.get(event.type, ()))
        targets += self._subscribers.get(ALL_EVENTS, ())
        for handler in targets:
            try:
                handler(event)
            except Exception as e:
                logging.exception(
                    f"Event subscriber failed on {event.type} for job {event.job_id}: {e}"
                )

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._subscribers.values())
        return len(self._subscribers.get(event_type, ()))

# =============================================================================
# Event Router
# =============================================================================
# Ordered handler list run for every event, whether it arrived through the
# local queue or from the broker via a Worker Loop.
# =============================================================================

import logging
from typing import Callable, List
from concierge.runtime.events import NormalizedEvent

logger = logging.getLogger(__name__)

# Type definitions
EventHandler = Callable[[NormalizedEvent], None]


class EventRouter:
    """
    One instance per process.

    Usage:
        router = EventRouter(kill_switch)
        unregister = router.register(handle_message)
        router.run_handlers_for_event(event)
    """

    def __init__(self, kill_switch):
        self.kill_switch = kill_switch
        self._handlers: List[EventHandler] = []

    def register(self, handler: EventHandler) -> Callable[[], None]:
        """Append a handler. Returns a function that removes it again."""
        self._handlers.append(handler)

        def unregister() -> None:
            self._handlers = [h for h in self._handlers if h is not handler]

        return unregister

    @property
    def handlers(self) -> List[EventHandler]:
        return list(self._handlers)

    def run_handlers_for_event(self, event: NormalizedEvent) -> int:
        """
        Run every handler, in registration order, for one event.

        A failing handler is logged and does not stop the ones after it.
        Nothing runs while the kill switch is engaged; the event is not
        replayed when it is released.

        Returns:
            Number of handlers that completed without raising
        """
        if self.kill_switch.get():
            logger.info(f"Kill switch engaged; skipping handlers for event {event.id}")
            return 0

        completed = 0
        for handler in list(self._handlers):
            try:
                handler(event)
                completed += 1
            except Exception as e:
                name = getattr(handler, "__name__", repr(handler))
                logger.exception(f"Handler {name} failed for event id={event.id} type={event.type}: {e}")
        return completed

    def process_local(self, queue) -> int:
        """Drain a LocalEventQueue through this router, halting while the kill switch is engaged."""
        return queue.drain(self.run_handlers_for_event, self.kill_switch.get)

# =============================================================================
# Dispatcher
# =============================================================================
# Single producer-side entry point: normalize -> dedup -> enqueue.
# Used by the API and by channel workers, so every producer pushes to the
# same queue. In local mode the router drains right after each enqueue.
# =============================================================================

import logging
from typing import Any, Callable, Dict, Optional, Union
from concierge.runtime.events import RawDispatchInput
from concierge.runtime.normalize import event_key, normalize, validate_raw_input

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Accepts raw dispatch requests and returns the event id synchronously,
    before any handler has run.

    Args:
        queue: LocalEventQueue or SqsEventQueue
        dedup: DedupCache / SharedDedupCache, or None to disable dedup
        on_enqueued: Called after a new event lands in a local queue
    """

    def __init__(self, queue, dedup=None, on_enqueued: Optional[Callable[[], Any]] = None):
        self.queue = queue
        self.dedup = dedup
        self.on_enqueued = on_enqueued

    def dispatch(
        self,
        raw: Union[RawDispatchInput, Dict[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Dispatch a raw event.

        Raises:
            DispatchValidationError: raw is a dict missing source/type/payload
            QueueFullError: local queue is at its bound
        """
        if not isinstance(raw, RawDispatchInput):
            raw = validate_raw_input(raw)

        event = normalize(raw, correlation_id=correlation_id)

        key = event_key(event)
        if self.dedup is not None:
            original_id = self.dedup.remember(key, event.id)
            if original_id is not None:
                logger.info(f"Duplicate dispatch source={event.source} type={event.type}; returning {original_id}")
                return original_id

        try:
            self.queue.enqueue(event)
        except Exception:
            # A rejected event must not shadow its own retry.
            if self.dedup is not None:
                self.dedup.forget(key)
            raise
        logger.info(f"Dispatched id={event.id} type={event.type} source={event.source} priority={event.priority}")

        if self.on_enqueued is not None and getattr(self.queue, "local", False):
            self.on_enqueued()
        return event.id

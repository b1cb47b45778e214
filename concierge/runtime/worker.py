# =============================================================================
# Worker Loop - Broker Consumer
# =============================================================================
# Long-running consumer (one per worker process) that pulls events from SQS
# and runs the router for each. Several may run against the same queue;
# SQS visibility keeps one job on one worker at a time, but two different
# events can be handled concurrently by two workers.
# =============================================================================

import logging
import threading
from concierge.runtime.events import NormalizedEvent

logger = logging.getLogger(__name__)


class WorkerLoop:

    def __init__(self, queue, router, error_backoff_seconds: float = 5):
        if getattr(queue, "local", False):
            raise ValueError("WorkerLoop needs a broker-backed queue; local queues drain in-process")
        self.queue = queue
        self.router = router
        self.error_backoff_seconds = error_backoff_seconds
        self._stop = threading.Event()

    def handle(self, event: NormalizedEvent) -> None:
        logger.info(f"Event received: type={event.type} source={event.source} id={event.id}")
        self.router.run_handlers_for_event(event)

    def poll_once(self) -> int:
        """One receive cycle. Returns the number of events handled."""
        return self.queue.poll_once(self.handle)

    def run(self) -> None:
        """Block until stop() is called."""
        self._stop.clear()
        logger.info(f"Worker loop started on {self.queue.queue_url}")
        self.queue.consume(self.handle, stop_event=self._stop, error_backoff_seconds=self.error_backoff_seconds)
        logger.info("Worker loop stopped")

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

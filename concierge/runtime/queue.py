# =============================================================================
# Event Queue - Local Priority Queue or SQS Broker
# =============================================================================
# Two interchangeable backends behind enqueue(event) -> id:
# - LocalEventQueue: in-memory, priority ordered, single-flight drain loop
# - SqsEventQueue: durable shared broker; Worker Loops consume from it
#
# The backend is a deployment-time choice (EVENT_QUEUE_URL configured or
# not), never a per-event one.
# =============================================================================

import bisect
import itertools
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple
from botocore.exceptions import BotoCoreError, ClientError
from concierge.runtime.events import NormalizedEvent

logger = logging.getLogger(__name__)

EventFunc = Callable[[NormalizedEvent], None]

DEFAULT_MAX_PENDING = 1000
DEFAULT_WAIT_SECONDS = 20
SQS_MAX_MESSAGES = 10


class QueueFullError(RuntimeError):
    """Local queue reached max_pending; caller should back off."""


# =============================================================================
# LOCAL MODE
# =============================================================================

class LocalEventQueue:
    """
    In-process queue ordered by descending priority (FIFO among equals).

    Owned by the process that created it. drain() is single-flight: a call
    made while another drain is running returns immediately and the running
    loop picks the new event up.
    """
    local = True

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self.max_pending = max_pending
        self._pending: List[Tuple[int, int, NormalizedEvent]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._processing = False

    def enqueue(self, event: NormalizedEvent) -> str:
        with self._lock:
            if len(self._pending) >= self.max_pending:
                raise QueueFullError(f"Local event queue full ({self.max_pending} pending)")
            bisect.insort(self._pending, (-event.priority, next(self._seq), event))
        return event.id

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def peek(self) -> List[NormalizedEvent]:
        """Pending events in processing order."""
        with self._lock:
            return [event for _, _, event in self._pending]

    @property
    def processing(self) -> bool:
        return self._processing

    def drain(self, run: EventFunc, is_paused: Callable[[], bool] = lambda: False) -> int:
        """
        Process pending events one at a time until empty or paused.

        Returns:
            Number of events handed to run
        """
        with self._lock:
            if self._processing or not self._pending:
                return 0
            self._processing = True

        processed = 0
        try:
            while True:
                if is_paused():
                    logger.info(f"Local queue paused with {len(self)} pending")
                    with self._lock:
                        self._processing = False
                    return processed
                with self._lock:
                    if not self._pending:
                        self._processing = False
                        return processed
                    _, _, event = self._pending.pop(0)
                run(event)
                processed += 1
        except BaseException:
            with self._lock:
                self._processing = False
            raise


# =============================================================================
# DISTRIBUTED MODE (SQS)
# =============================================================================

class SqsEventQueue:
    """
    Adapter to an SQS queue shared by producers and Worker Loops.

    Priority travels as a message attribute and orders each received batch;
    it is a hint, not a global guarantee across producers. Messages are
    deleted only after their handler call returns, so a crashed worker's
    job is redelivered once the visibility timeout lapses.
    """
    local = False

    def __init__(
        self,
        sqs: Any,
        queue_url: str,
        wait_seconds: int = DEFAULT_WAIT_SECONDS,
        max_messages: int = SQS_MAX_MESSAGES,
    ):
        self.sqs = sqs
        self.queue_url = queue_url
        self.wait_seconds = wait_seconds
        self.max_messages = max_messages

    @property
    def is_fifo(self) -> bool:
        return self.queue_url.endswith(".fifo")

    def enqueue(self, event: NormalizedEvent) -> str:
        params: Dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MessageBody": json.dumps(event.to_dict(), ensure_ascii=False, default=str),
            "MessageAttributes": {
                "priority": {"DataType": "Number", "StringValue": str(event.priority)},
                "eventType": {"DataType": "String", "StringValue": event.type},
                "source": {"DataType": "String", "StringValue": event.source},
            },
        }
        if self.is_fifo:
            params["MessageGroupId"] = event.source
            params["MessageDeduplicationId"] = event.id
        response = self.sqs.send_message(**params)
        logger.info(f"Enqueued event id={event.id} type={event.type} sqsMessageId={response.get('MessageId')}")
        return event.id

    def _delete(self, message: Dict[str, Any]) -> None:
        self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message["ReceiptHandle"])

    def poll_once(self, fn: EventFunc) -> int:
        """
        Receive one batch, run fn for each event (highest priority first).

        Returns:
            Number of events handled and deleted
        """
        response = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=self.max_messages,
            WaitTimeSeconds=self.wait_seconds,
            MessageAttributeNames=["All"],
        )
        messages = response.get("Messages", [])
        if not messages:
            return 0

        batch: List[Tuple[NormalizedEvent, Dict[str, Any]]] = []
        for message in messages:
            try:
                event = NormalizedEvent.from_dict(json.loads(message.get("Body", "")))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Dropping undecodable message {message.get('MessageId')}: {e}")
                self._delete(message)
                continue
            batch.append((event, message))

        batch.sort(key=lambda pair: pair[0].priority, reverse=True)

        handled = 0
        for event, message in batch:
            try:
                fn(event)
            except Exception as e:
                logger.exception(f"Event {event.id} failed; leaving for redelivery: {e}")
                continue
            self._delete(message)
            handled += 1
        return handled

    def consume(
        self,
        fn: EventFunc,
        stop_event: Optional[threading.Event] = None,
        error_backoff_seconds: float = 5,
    ) -> None:
        """Long-poll until stop_event is set. Broker errors are logged and retried."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                self.poll_once(fn)
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"SQS receive failed, retrying in {error_backoff_seconds}s: {e}")
                stop_event.wait(error_backoff_seconds)

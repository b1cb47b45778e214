# =============================================================================
# Fan-out Notifications
# =============================================================================
# Lightweight cross-process signals ("audit changed, re-fetch", chat results
# for real-time clients, replies for channel adapters).
# - LocalNotifier: in-process callbacks
# - SnsNotifier: publish to an SNS topic; channel travels as an attribute
# - FanoutSubscriber: long-polls an SQS queue subscribed to that topic
#
# Delivery is best-effort. Subscribers must re-fetch state rather than trust
# notification content.
# =============================================================================

import json
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Tuple
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

AUDIT_ENTRY_ADDED_CHANNEL = "audit:entry_added"
CHAT_RESULT_CHANNEL = "chat-result"
RESPONSE_DELIVERY_CHANNEL = "response_delivery"

MessageCallback = Callable[[str], None]


class LocalNotifier:
    """In-process pub/sub."""

    def __init__(self):
        self._subscribers: DefaultDict[str, List[MessageCallback]] = defaultdict(list)

    def subscribe(self, channel: str, callback: MessageCallback) -> Callable[[], None]:
        self._subscribers[channel].append(callback)

        def unsubscribe() -> None:
            self._subscribers[channel] = [c for c in self._subscribers[channel] if c is not callback]

        return unsubscribe

    def publish(self, channel: str, message: str) -> None:
        for callback in list(self._subscribers[channel]):
            try:
                callback(message)
            except Exception as e:
                logger.exception(f"Subscriber on {channel} failed: {e}")


class SnsNotifier:
    """Publishes to one SNS topic. Failures are logged, never raised."""

    def __init__(self, sns: Any, topic_arn: str):
        self.sns = sns
        self.topic_arn = topic_arn

    def publish(self, channel: str, message: str) -> None:
        try:
            self.sns.publish(
                TopicArn=self.topic_arn,
                Message=message,
                MessageAttributes={"channel": {"DataType": "String", "StringValue": channel}},
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Fan-out publish to {channel} failed: {e}")


def _unwrap(message: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """Return (channel, body) for an SQS message fed by SNS, with or without raw delivery."""
    body = message.get("Body", "")
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        parsed = None

    if isinstance(parsed, dict) and parsed.get("Type") == "Notification":
        attr = (parsed.get("MessageAttributes") or {}).get("channel") or {}
        return attr.get("Value"), parsed.get("Message", "")

    attr = (message.get("MessageAttributes") or {}).get("channel") or {}
    return attr.get("StringValue"), body


class FanoutSubscriber:
    """Receives fan-out notifications in another process via SNS -> SQS."""

    def __init__(self, sqs: Any, queue_url: str, wait_seconds: int = 20):
        self.sqs = sqs
        self.queue_url = queue_url
        self.wait_seconds = wait_seconds
        self._callbacks: Dict[str, MessageCallback] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, channel: str, callback: MessageCallback) -> None:
        self._callbacks[channel] = callback

    def unsubscribe(self, channel: str) -> None:
        self._callbacks.pop(channel, None)

    def poll_once(self) -> int:
        response = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=10,
            WaitTimeSeconds=self.wait_seconds,
            MessageAttributeNames=["All"],
        )
        delivered = 0
        for message in response.get("Messages", []):
            channel, body = _unwrap(message)
            callback = self._callbacks.get(channel) if channel else None
            if callback is not None:
                try:
                    callback(body)
                    delivered += 1
                except Exception as e:
                    logger.exception(f"Fan-out callback for {channel} failed: {e}")
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message["ReceiptHandle"])
        return delivered

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Fan-out receive failed: {e}")
                self._stop.wait(5)

    def start(self) -> "FanoutSubscriber":
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="fanout-subscriber", daemon=True)
        self._thread.start()
        return self

    def close(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

#!/usr/bin/env python3
"""
Tests for distributed mode (SQS broker, SNS fan-out).

Tests:
- SqsEventQueue enqueue / poll / consume
- WorkerLoop
- SQS-triggered worker handler (batchItemFailures)
- SNS notifier and fan-out subscriber

All AWS clients are MagicMocks; no network access.

Run with: pytest tests/test_distributed.py -v
"""
import os
import sys
import json
import threading
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

QUEUE_URL = "https://sqs.ap-south-1.amazonaws.com/123456789012/concierge-events"


def make_event(priority=5, text="hi", source="api"):
    from concierge.runtime.events import NormalizedEvent, MessagePayload
    return NormalizedEvent(
        source=source,
        type="message.sent",
        priority=priority,
        payload=MessagePayload(text=text, user_id="default"),
    )


def sqs_message(event, message_id=None):
    return {
        "MessageId": message_id or f"msg-{event.id}",
        "ReceiptHandle": f"rh-{event.id}",
        "Body": json.dumps(event.to_dict()),
    }


# =============================================================================
# TEST: SqsEventQueue
# =============================================================================

class TestSqsEventQueue:

    def test_enqueue_sends_event_with_priority(self):
        from concierge.runtime.events import NormalizedEvent
        from concierge.runtime.queue import SqsEventQueue

        sqs = MagicMock()
        sqs.send_message.return_value = {"MessageId": "m-1"}
        queue = SqsEventQueue(sqs, QUEUE_URL)
        event = make_event(priority=10)

        assert queue.enqueue(event) == event.id

        kwargs = sqs.send_message.call_args.kwargs
        assert kwargs["QueueUrl"] == QUEUE_URL
        assert kwargs["MessageAttributes"]["priority"] == {"DataType": "Number", "StringValue": "10"}
        assert "MessageGroupId" not in kwargs
        assert NormalizedEvent.from_dict(json.loads(kwargs["MessageBody"])) == event
        print("✓ Event sent with priority attribute")

    def test_fifo_queue_groups_by_source(self):
        from concierge.runtime.queue import SqsEventQueue

        sqs = MagicMock()
        queue = SqsEventQueue(sqs, QUEUE_URL + ".fifo")
        event = make_event(source="slack")
        queue.enqueue(event)

        kwargs = sqs.send_message.call_args.kwargs
        assert kwargs["MessageGroupId"] == "slack"
        assert kwargs["MessageDeduplicationId"] == event.id
        print("✓ FIFO queues get group and dedup ids")

    def test_poll_orders_batch_and_deletes_after_handler(self):
        from concierge.runtime.queue import SqsEventQueue

        low, high = make_event(priority=1, text="low"), make_event(priority=10, text="high")
        garbage = {"MessageId": "bad", "ReceiptHandle": "rh-bad", "Body": "{not json"}
        sqs = MagicMock()
        sqs.receive_message.return_value = {"Messages": [sqs_message(low), garbage, sqs_message(high)]}
        queue = SqsEventQueue(sqs, QUEUE_URL, wait_seconds=1)

        order = []
        handled = queue.poll_once(lambda event: order.append(event.payload.text))

        assert handled == 2
        assert order == ["high", "low"]
        deleted = [c.kwargs["ReceiptHandle"] for c in sqs.delete_message.call_args_list]
        assert sorted(deleted) == sorted(["rh-bad", f"rh-{low.id}", f"rh-{high.id}"])
        print("✓ Batch ordered by priority; undecodable messages dropped")

    def test_failed_handler_leaves_message_for_redelivery(self):
        from concierge.runtime.queue import SqsEventQueue

        event = make_event()
        sqs = MagicMock()
        sqs.receive_message.return_value = {"Messages": [sqs_message(event)]}
        queue = SqsEventQueue(sqs, QUEUE_URL)

        def crash(evt):
            raise RuntimeError("worker crashed")

        assert queue.poll_once(crash) == 0
        sqs.delete_message.assert_not_called()
        print("✓ Unsettled message stays on the queue")

    def test_consume_survives_broker_errors(self):
        from botocore.exceptions import ClientError
        from concierge.runtime.queue import SqsEventQueue

        stop = threading.Event()
        event = make_event()
        calls = []

        def receive(**kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "x"}}, "ReceiveMessage")
            stop.set()
            return {"Messages": [sqs_message(event)]}

        sqs = MagicMock()
        sqs.receive_message.side_effect = receive
        queue = SqsEventQueue(sqs, QUEUE_URL)
        seen = []

        queue.consume(seen.append, stop_event=stop, error_backoff_seconds=0)

        assert len(calls) == 2
        assert [e.id for e in seen] == [event.id]
        print("✓ consume() retries after broker errors")


# =============================================================================
# TEST: WorkerLoop
# =============================================================================

class TestWorkerLoop:

    def test_rejects_local_queue(self):
        import pytest
        from concierge.runtime.queue import LocalEventQueue
        from concierge.runtime.worker import WorkerLoop

        with pytest.raises(ValueError):
            WorkerLoop(LocalEventQueue(), MagicMock())
        print("✓ WorkerLoop needs a broker")

    def test_poll_once_runs_router(self):
        from concierge.runtime.queue import SqsEventQueue
        from concierge.runtime.worker import WorkerLoop

        event = make_event()
        sqs = MagicMock()
        sqs.receive_message.return_value = {"Messages": [sqs_message(event)]}
        router = MagicMock()

        loop = WorkerLoop(SqsEventQueue(sqs, QUEUE_URL), router)
        assert loop.poll_once() == 1
        assert router.run_handlers_for_event.call_args.args[0].id == event.id
        print("✓ Each pulled event goes through the router")

    def test_run_until_stopped(self):
        from concierge.runtime.queue import SqsEventQueue
        from concierge.runtime.worker import WorkerLoop

        sqs = MagicMock()
        router = MagicMock()
        loop = WorkerLoop(SqsEventQueue(sqs, QUEUE_URL, wait_seconds=0), router)

        def receive(**kwargs):
            loop.stop()
            return {}

        sqs.receive_message.side_effect = receive
        loop.run()

        assert loop.stopped
        router.run_handlers_for_event.assert_not_called()
        print("✓ run() returns after stop()")


# =============================================================================
# TEST: SQS-triggered worker handler
# =============================================================================

class TestWorkerHandler:

    def test_reports_only_failed_records(self):
        from concierge.app.worker_handler import handle_records

        ok, bad = make_event(text="ok", priority=1), make_event(text="bad", priority=9)
        deps = MagicMock()

        def run(event):
            if event.payload.text == "bad":
                raise RuntimeError("boom")
            return 1

        deps.router.run_handlers_for_event.side_effect = run
        records = [
            {"messageId": "m-ok", "body": json.dumps(ok.to_dict())},
            {"messageId": "m-bad", "body": json.dumps(bad.to_dict())},
            {"messageId": "m-garbage", "body": "nope"},
        ]

        result = handle_records(records, deps)

        assert result == {"batchItemFailures": [{"itemIdentifier": "m-bad"}]}
        handled = [c.args[0].payload.text for c in deps.router.run_handlers_for_event.call_args_list]
        assert handled == ["bad", "ok"]
        print("✓ batchItemFailures lists only records that raised")


# =============================================================================
# TEST: Fan-out
# =============================================================================

class TestFanout:

    def test_local_notifier(self):
        from concierge.notifications.fanout import LocalNotifier

        notifier = LocalNotifier()
        got = []
        unsubscribe = notifier.subscribe("audit:entry_added", got.append)
        notifier.subscribe("audit:entry_added", lambda m: 1 / 0)

        notifier.publish("audit:entry_added", "1")
        notifier.publish("other", "x")
        unsubscribe()
        notifier.publish("audit:entry_added", "1")

        assert got == ["1"]
        print("✓ Local notifier delivers per channel and isolates failures")

    def test_sns_publish_never_raises(self):
        from botocore.exceptions import ClientError
        from concierge.notifications.fanout import SnsNotifier

        sns = MagicMock()
        notifier = SnsNotifier(sns, "arn:aws:sns:ap-south-1:123456789012:concierge")
        notifier.publish("chat-result", '{"eventId": "e"}')

        kwargs = sns.publish.call_args.kwargs
        assert kwargs["MessageAttributes"]["channel"]["StringValue"] == "chat-result"

        sns.publish.side_effect = ClientError({"Error": {"Code": "Throttling", "Message": "x"}}, "Publish")
        notifier.publish("chat-result", "x")
        print("✓ SNS publish carries the channel; failures are logged")

    def test_subscriber_unwraps_sns_and_raw_messages(self):
        from concierge.notifications.fanout import FanoutSubscriber

        sns_envelope = {
            "MessageId": "1",
            "ReceiptHandle": "rh-1",
            "Body": json.dumps({
                "Type": "Notification",
                "Message": "1",
                "MessageAttributes": {"channel": {"Type": "String", "Value": "audit:entry_added"}},
            }),
        }
        raw_delivery = {
            "MessageId": "2",
            "ReceiptHandle": "rh-2",
            "Body": '{"eventId": "e-1"}',
            "MessageAttributes": {"channel": {"DataType": "String", "StringValue": "chat-result"}},
        }
        unknown = {"MessageId": "3", "ReceiptHandle": "rh-3", "Body": "x"}

        sqs = MagicMock()
        sqs.receive_message.return_value = {"Messages": [sns_envelope, raw_delivery, unknown]}
        subscriber = FanoutSubscriber(sqs, QUEUE_URL, wait_seconds=0)
        audit, results = [], []
        subscriber.subscribe("audit:entry_added", audit.append)
        subscriber.subscribe("chat-result", results.append)

        assert subscriber.poll_once() == 2
        assert audit == ["1"]
        assert results == ['{"eventId": "e-1"}']
        assert sqs.delete_message.call_count == 3
        print("✓ Subscriber routes SNS and raw deliveries by channel")


if __name__ == "__main__":
    import pytest
    sys.exit(pytest.main([__file__, "-v"]))

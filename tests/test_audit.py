#!/usr/bin/env python3
"""
Tests for the audit log and result delivery.

Tests:
- AuditLog append / list / clear / emit_response
- DynamoAuditStore item layout, pagination and bulk clear
- ResultRelay (chat-result fan-out + one response entry)

Run with: pytest tests/test_audit.py -v
"""
import os
import sys
import json
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def make_audit_log():
    from concierge.audit.log import AuditLog
    from concierge.audit.store import MemoryAuditStore
    from concierge.notifications.fanout import LocalNotifier

    notifier = LocalNotifier()
    return AuditLog(MemoryAuditStore(), notifier), notifier


# =============================================================================
# TEST: AuditLog
# =============================================================================

class TestAuditLog:

    def test_append_signals_without_content(self):
        from concierge.notifications.fanout import AUDIT_ENTRY_ADDED_CHANNEL

        audit_log, notifier = make_audit_log()
        signals = []
        notifier.subscribe(AUDIT_ENTRY_ADDED_CHANNEL, signals.append)

        entry = audit_log.append("agent_run", {"eventId": "e-1", "response": "hello"})

        assert signals == ["1"]
        assert entry.user_id == "default"
        assert entry.id and entry.timestamp
        print("✓ Append publishes a content-free signal")

    def test_list_newest_first(self):
        audit_log, _ = make_audit_log()
        for n in range(3):
            audit_log.append("agent_run", {"n": n})

        assert [e.payload["n"] for e in audit_log.list()] == [2, 1, 0]
        assert [e.payload["n"] for e in audit_log.list(newest_first=False)] == [0, 1, 2]
        print("✓ Entries listed newest first")

    def test_clear_one_user(self):
        audit_log, _ = make_audit_log()
        audit_log.append("agent_run", {"n": 1}, user_id="alice")
        audit_log.append("agent_run", {"n": 2}, user_id="bob")
        audit_log.append("agent_run", {"n": 3}, user_id="alice")

        assert audit_log.clear("alice") == 2
        assert [e.user_id for e in audit_log.list()] == ["bob"]
        print("✓ Bulk clear removes one user's entries only")

    def test_emit_response_types_and_listeners(self):
        import pytest

        audit_log, _ = make_audit_log()
        received = []
        unsubscribe = audit_log.on_response_received(received.append)
        audit_log.on_response_received(lambda payload: 1 / 0)

        entry = audit_log.emit_response({"type": "response", "text": "hi", "eventId": "e-1"}, user_id="u")
        assert entry.type == "response"
        assert entry.user_id == "u"
        assert received == [{"type": "response", "text": "hi", "eventId": "e-1"}]

        audit_log.emit_response({"type": "decision", "decision": {"id": "d"}})
        audit_log.emit_response({"type": "capability_request", "integration": "gh", "capability": "read"})
        with pytest.raises(ValueError):
            audit_log.emit_response({"type": "agent_run"})

        unsubscribe()
        audit_log.emit_response({"type": "response", "text": "later"})
        assert len(received) == 3
        assert [e.type for e in audit_log.list()] == ["response", "capability_request", "decision", "response"]
        print("✓ emit_response records user-facing outcomes and notifies listeners")


# =============================================================================
# TEST: DynamoAuditStore
# =============================================================================

class TestDynamoAuditStore:

    def test_append_item_layout(self):
        from concierge.audit.store import AuditEntry, DynamoAuditStore

        table = MagicMock()
        entry = AuditEntry(type="response", payload={"text": "hi"}, user_id="u-1")
        DynamoAuditStore(table).append(entry)

        item = table.put_item.call_args.kwargs["Item"]
        assert item["pk"] == "AUDIT"
        assert item["sk"] == f"{entry.timestamp}#{entry.id}"
        assert item["userId"] == "u-1"
        assert json.loads(item["payload"]) == {"text": "hi"}
        print("✓ Audit items share one time-sorted partition")

    def test_list_follows_pagination(self):
        from concierge.audit.store import DynamoAuditStore

        table = MagicMock()
        table.query.side_effect = [
            {
                "Items": [{"id": "2", "timestamp": "t2", "type": "response", "userId": "u", "payload": '{"n": 2}'}],
                "LastEvaluatedKey": {"pk": "AUDIT", "sk": "t2#2"},
            },
            {"Items": [{"id": "1", "timestamp": "t1", "type": "agent_run", "userId": "u", "payload": '{"n": 1}'}]},
        ]

        entries = DynamoAuditStore(table).list()

        assert [e.id for e in entries] == ["2", "1"]
        assert entries[0].payload == {"n": 2}
        first_call = table.query.call_args_list[0].kwargs
        assert first_call["ScanIndexForward"] is False
        assert table.query.call_args_list[1].kwargs["ExclusiveStartKey"] == {"pk": "AUDIT", "sk": "t2#2"}
        print("✓ Listing pages through the partition newest first")

    def test_clear_batch_deletes_user_items(self):
        from concierge.audit.store import DynamoAuditStore

        table = MagicMock()
        table.query.return_value = {"Items": [
            {"pk": "AUDIT", "sk": "t1#1", "userId": "alice"},
            {"pk": "AUDIT", "sk": "t2#2", "userId": "bob"},
            {"pk": "AUDIT", "sk": "t3#3", "userId": "alice"},
        ]}
        batch = table.batch_writer.return_value.__enter__.return_value

        assert DynamoAuditStore(table).clear("alice") == 2
        keys = [c.kwargs["Key"] for c in batch.delete_item.call_args_list]
        assert keys == [{"pk": "AUDIT", "sk": "t1#1"}, {"pk": "AUDIT", "sk": "t3#3"}]
        print("✓ Bulk clear deletes only that user's items")


# =============================================================================
# TEST: ResultRelay
# =============================================================================

class TestResultRelay:

    def test_deliver_publishes_and_records_once(self):
        from concierge.app.results import ResultRelay
        from concierge.notifications.fanout import CHAT_RESULT_CHANNEL

        audit_log, notifier = make_audit_log()
        pushed = []
        notifier.subscribe(CHAT_RESULT_CHANNEL, lambda m: pushed.append(json.loads(m)))
        relay = ResultRelay(audit_log, notifier)

        relay.deliver("e-1", {"text": "Hello!", "lastAgentName": "Concierge", "userId": "u", "userInput": "hi"})

        assert pushed == [{
            "eventId": "e-1",
            "message": {"role": "assistant", "text": "Hello!", "lastAgentName": "Concierge", "userId": "u", "userInput": "hi"},
        }]
        responses = [e for e in audit_log.list() if e.type == "response"]
        assert len(responses) == 1
        assert responses[0].payload == {"type": "response", "text": "Hello!", "eventId": "e-1", "userInput": "hi"}
        assert responses[0].user_id == "u"
        assert relay.responses_for("e-1") == [{"role": "assistant", "text": "Hello!"}]
        print("✓ Result pushed on chat-result and recorded once")

    def test_tracking_is_bounded(self):
        from concierge.app.results import ResultRelay

        audit_log, notifier = make_audit_log()
        relay = ResultRelay(audit_log, notifier, max_tracked=2)
        for n in range(3):
            relay.deliver(f"e-{n}", {"text": str(n)})

        assert relay.responses_for("e-0") == []
        assert relay.responses_for("e-2") == [{"role": "assistant", "text": "2"}]
        print("✓ Oldest tracked results evicted")


if __name__ == "__main__":
    import pytest
    sys.exit(pytest.main([__file__, "-v"]))

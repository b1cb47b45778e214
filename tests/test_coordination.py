#!/usr/bin/env python3
"""
Tests for cross-process coordination.

Tests:
- Memory and DynamoDB coordination stores
- Kill switch
- Reload flags and the reload watcher
- Shared dedup cache

Run with: pytest tests/test_coordination.py -v
"""
import os
import sys
import threading
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def client_error(code="ProvisionedThroughputExceededException", operation="GetItem"):
    from botocore.exceptions import ClientError
    return ClientError({"Error": {"Code": code, "Message": "test"}}, operation)


# =============================================================================
# TEST: Memory store
# =============================================================================

class TestMemoryCoordinationStore:

    def test_get_set_pop(self):
        from concierge.runtime.coordination import MemoryCoordinationStore

        store = MemoryCoordinationStore()
        assert store.get("a") is None
        store.set("a", "1")
        assert store.get("a") == "1"
        assert store.pop("a") == "1"
        assert store.pop("a") is None
        print("✓ Memory store get/set/pop")

    def test_ttl_and_set_if_absent(self):
        from concierge.runtime.coordination import MemoryCoordinationStore

        now = [100.0]
        store = MemoryCoordinationStore(clock=lambda: now[0])

        assert store.set_if_absent("k", "evt-1", ttl_seconds=10) is None
        assert store.set_if_absent("k", "evt-2", ttl_seconds=10) == "evt-1"
        now[0] += 10
        assert store.get("k") is None
        assert store.set_if_absent("k", "evt-3", ttl_seconds=10) is None
        assert store.get("k") == "evt-3"
        print("✓ Expired keys are gone; set_if_absent reports the holder")

    def test_store_key(self):
        from concierge.runtime.coordination import store_key

        assert store_key("reload", "slack") == "concierge:reload:slack"
        print("✓ Store keys are namespaced")


# =============================================================================
# TEST: DynamoDB store
# =============================================================================

class TestDynamoCoordinationStore:

    def test_get_reads_consistently_and_honours_expiry(self):
        import time
        from concierge.runtime.coordination import DynamoCoordinationStore

        table = MagicMock()
        store = DynamoCoordinationStore(table, pk_name="pk")

        table.get_item.return_value = {"Item": {"pk": "k", "value": "1"}}
        assert store.get("k") == "1"
        table.get_item.assert_called_with(Key={"pk": "k"}, ConsistentRead=True)

        table.get_item.return_value = {"Item": {"pk": "k", "value": "1", "expiresAt": int(time.time()) - 5}}
        assert store.get("k") is None

        table.get_item.return_value = {}
        assert store.get("k") is None
        print("✓ Dynamo get is consistent and treats expired items as absent")

    def test_set_with_ttl(self):
        from concierge.runtime.coordination import DynamoCoordinationStore

        table = MagicMock()
        DynamoCoordinationStore(table).set("k", "v", ttl_seconds=60)

        item = table.put_item.call_args.kwargs["Item"]
        assert item["pk"] == "k"
        assert item["value"] == "v"
        assert item["ttl"] == item["expiresAt"]
        print("✓ Dynamo set writes TTL attributes")

    def test_pop_is_single_delete(self):
        from concierge.runtime.coordination import DynamoCoordinationStore

        table = MagicMock()
        table.delete_item.return_value = {"Attributes": {"pk": "k", "value": "1"}}
        store = DynamoCoordinationStore(table)

        assert store.pop("k") == "1"
        table.delete_item.assert_called_once_with(Key={"pk": "k"}, ReturnValues="ALL_OLD")
        table.get_item.assert_not_called()
        print("✓ Dynamo pop reads and clears in one call")

    def test_set_if_absent(self):
        import pytest
        from botocore.exceptions import ClientError
        from concierge.runtime.coordination import DynamoCoordinationStore

        table = MagicMock()
        store = DynamoCoordinationStore(table)

        assert store.set_if_absent("k", "evt-1", ttl_seconds=60) is None
        kwargs = table.put_item.call_args.kwargs
        assert "attribute_not_exists(pk)" in kwargs["ConditionExpression"]

        table.put_item.side_effect = client_error("ConditionalCheckFailedException", "PutItem")
        table.get_item.return_value = {"Item": {"pk": "k", "value": "evt-1"}}
        assert store.set_if_absent("k", "evt-2", ttl_seconds=60) == "evt-1"

        table.put_item.side_effect = client_error("AccessDeniedException", "PutItem")
        with pytest.raises(ClientError):
            store.set_if_absent("k", "evt-3", ttl_seconds=60)
        print("✓ Conditional put returns the existing holder")


# =============================================================================
# TEST: Kill switch
# =============================================================================

class TestKillSwitch:

    def test_default_set_get(self):
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.kill_switch import KillSwitch, KILL_SWITCH_KEY

        store = MemoryCoordinationStore()
        switch = KillSwitch(store)

        assert switch.get() is False
        assert switch.set(True) is True
        assert switch.engaged
        assert store.get(KILL_SWITCH_KEY) == "1"
        switch.set(False)
        assert switch.get() is False
        print("✓ Kill switch defaults off and round-trips")

    def test_shared_between_instances(self):
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.kill_switch import KillSwitch

        store = MemoryCoordinationStore()
        KillSwitch(store).set(True)
        assert KillSwitch(store).get() is True
        print("✓ Every reader of the store sees the same value")

    def test_store_failure_reads_as_disengaged(self):
        from concierge.runtime.kill_switch import KillSwitch

        store = MagicMock()
        store.get.side_effect = client_error()
        assert KillSwitch(store).get() is False
        print("✓ Unreadable kill switch treated as off")


# =============================================================================
# TEST: Reload flags
# =============================================================================

class TestReloadFlags:

    def test_several_sets_one_reload(self):
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.reload_flags import ReloadFlags, ReloadWatcher

        store = MemoryCoordinationStore()
        flags = ReloadFlags(store)
        on_reload = MagicMock()
        watcher = ReloadWatcher(store, ["slack", "email"], on_reload)

        flags.set_flag("slack")
        flags.set_flag("slack")
        flags.set_flag("whatsapp")

        assert watcher.poll_once() == ["slack"]
        on_reload.assert_called_once_with(["slack"])
        assert not flags.is_set("slack")
        assert flags.is_set("whatsapp")

        assert watcher.poll_once() == []
        assert on_reload.call_count == 1
        print("✓ Multiple sets before a poll cause one reload")

    def test_unknown_scope_rejected(self):
        import pytest
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.reload_flags import ReloadFlags, ReloadWatcher

        store = MemoryCoordinationStore()
        with pytest.raises(ValueError):
            ReloadFlags(store).set_flags(["slack", "telegram"])
        assert not ReloadFlags(store).is_set("slack")
        with pytest.raises(ValueError):
            ReloadWatcher(store, ["telegram"], lambda scopes: None)
        print("✓ Only known scopes accepted")

    def test_store_and_callback_errors_are_contained(self):
        from concierge.runtime.reload_flags import ReloadWatcher, reload_key

        store = MagicMock()

        def pop(key):
            if key == reload_key("slack"):
                raise client_error("InternalServerError", "DeleteItem")
            return "1"

        store.pop.side_effect = pop
        on_reload = MagicMock(side_effect=RuntimeError("adapter restart failed"))
        watcher = ReloadWatcher(store, ["slack", "email"], on_reload)

        assert watcher.poll_once() == ["email"]
        on_reload.assert_called_once_with(["email"])
        print("✓ Store and callback failures are logged, polling continues")

    def test_watcher_thread(self):
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.reload_flags import ReloadFlags, ReloadWatcher

        store = MemoryCoordinationStore()
        fired = threading.Event()
        received = []

        def on_reload(scopes):
            received.append(scopes)
            fired.set()

        watcher = ReloadWatcher(store, ["schedule"], on_reload, interval=0.01).start()
        try:
            ReloadFlags(store).set_flag("schedule")
            assert fired.wait(timeout=2)
        finally:
            watcher.stop(timeout=1)

        assert received == [["schedule"]]
        print("✓ Background watcher observes a flag within an interval")


# =============================================================================
# TEST: Shared dedup
# =============================================================================

class TestSharedDedupCache:

    def test_replicas_share_keys(self):
        import hashlib
        from concierge.runtime.coordination import MemoryCoordinationStore
        from concierge.runtime.dedup import SharedDedupCache

        store = MemoryCoordinationStore()
        replica_a = SharedDedupCache(store, ttl_seconds=60)
        replica_b = SharedDedupCache(store, ttl_seconds=60)

        assert replica_a.remember("api:message.sent:{}", "evt-1") is None
        assert replica_b.remember("api:message.sent:{}", "evt-2") == "evt-1"

        digest = hashlib.sha256("api:message.sent:{}".encode("utf-8")).hexdigest()
        assert store.get(f"concierge:dedup:{digest}") == "evt-1"

        replica_a.forget("api:message.sent:{}")
        assert replica_b.remember("api:message.sent:{}", "evt-3") is None
        print("✓ Shared dedup is visible across replicas")

    def test_fails_open(self):
        from concierge.runtime.dedup import SharedDedupCache

        store = MagicMock()
        store.set_if_absent.side_effect = client_error("InternalServerError", "PutItem")
        assert SharedDedupCache(store).remember("k", "evt-1") is None
        print("✓ Store failure accepts the event")


if __name__ == "__main__":
    import pytest
    sys.exit(pytest.main([__file__, "-v"]))

# =============================================================================
# Coordination Store - Shared Keys Across Processes
# =============================================================================
# Backs the reload flags, the kill switch and (optionally) shared dedup.
# - MemoryCoordinationStore: single-process deployments and tests
# - DynamoCoordinationStore: one DynamoDB table shared by API and workers
#
# No locking: last writer wins. pop() is an atomic read-and-delete so a
# flag set while a reader is clearing it is never lost.
# =============================================================================

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

KEY_PREFIX = "concierge"


def store_key(*parts: str) -> str:
    """Build a namespaced store key, e.g. concierge:reload:slack."""
    return ":".join((KEY_PREFIX,) + parts)


class MemoryCoordinationStore:
    """In-process store with optional per-key expiry."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._items.pop(key, None)
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> Optional[str]:
        """Store value unless a live one exists. Returns the existing value, or None if stored."""
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            existing = self._live(key)
            if existing is not None:
                return existing
            self._items[key] = (value, expires_at)
            return None


class DynamoCoordinationStore:
    """
    DynamoDB-backed store.

    Item layout: {<pk>: key, "value": str, "updatedAt": iso, "expiresAt": epoch, "ttl": epoch}
    DynamoDB TTL deletion is lazy, so reads also compare expiresAt.
    """

    def __init__(self, table: Any, pk_name: str = "pk"):
        self.table = table
        self.pk_name = pk_name

    def _key(self, key: str) -> Dict[str, str]:
        return {self.pk_name: key}

    @staticmethod
    def _expired(item: Dict[str, Any]) -> bool:
        expires_at = item.get("expiresAt")
        return expires_at is not None and int(expires_at) <= int(time.time())

    def _item(self, key: str, value: str, ttl_seconds: Optional[float]) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            self.pk_name: key,
            "value": value,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        if ttl_seconds:
            expires_at = int(time.time() + ttl_seconds)
            item["expiresAt"] = expires_at
            item["ttl"] = expires_at
        return item

    def get(self, key: str) -> Optional[str]:
        response = self.table.get_item(Key=self._key(key), ConsistentRead=True)
        item = response.get("Item")
        if not item or self._expired(item):
            return None
        return str(item.get("value", ""))

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        self.table.put_item(Item=self._item(key, value, ttl_seconds))

    def pop(self, key: str) -> Optional[str]:
        response = self.table.delete_item(Key=self._key(key), ReturnValues="ALL_OLD")
        item = response.get("Attributes")
        if not item or self._expired(item):
            return None
        return str(item.get("value", ""))

    def delete(self, key: str) -> None:
        self.table.delete_item(Key=self._key(key))

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> Optional[str]:
        """Conditional put. Returns the existing value when the key is already live."""
        try:
            self.table.put_item(
                Item=self._item(key, value, ttl_seconds),
                ConditionExpression=f"attribute_not_exists({self.pk_name}) OR expiresAt <= :now",
                ExpressionAttributeValues={":now": int(time.time())},
            )
            return None
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
        # None here means the holder expired between the put and the read.
        return self.get(key)

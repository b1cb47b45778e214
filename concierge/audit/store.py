# =============================================================================
# Audit Store - Append-Only Persistence
# =============================================================================
# Entries are shared across the API and workers. Never mutated; removed
# only by an explicit per-user bulk clear.
# =============================================================================

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

AUDIT_PK = "AUDIT"
DEFAULT_USER_ID = "default"


class AuditEntryType:
    """Known entry types. Other strings are allowed as extensions."""
    RESPONSE = "response"
    DECISION = "decision"
    CAPABILITY_REQUEST = "capability_request"
    SCHEDULED_TASK = "scheduled_task"
    AGENT_RUN = "agent_run"


@dataclass(frozen=True)
class AuditEntry:
    type: str
    payload: Dict[str, Any]
    user_id: str = DEFAULT_USER_ID
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "userId": self.user_id,
            "payload": self.payload,
        }


class MemoryAuditStore:
    """Process-local store for single-process deployments and tests."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def list(self, newest_first: bool = True) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._entries)
        # Stable sort keeps append order for entries sharing a timestamp.
        entries.sort(key=lambda e: e.timestamp)
        if newest_first:
            entries.reverse()
        return entries

    def clear(self, user_id: str) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.user_id != user_id]
            return before - len(self._entries)


class DynamoAuditStore:
    """
    DynamoDB-backed store.

    Item layout: {pk: "AUDIT", sk: "<timestamp>#<id>", id, timestamp, type,
    userId, payload: <JSON string>}. One partition, sorted by time.
    """

    def __init__(self, table: Any, pk_name: str = "pk", sk_name: str = "sk"):
        self.table = table
        self.pk_name = pk_name
        self.sk_name = sk_name

    def append(self, entry: AuditEntry) -> None:
        self.table.put_item(Item={
            self.pk_name: AUDIT_PK,
            self.sk_name: f"{entry.timestamp}#{entry.id}",
            "itemType": "AUDIT_ENTRY",
            "id": entry.id,
            "timestamp": entry.timestamp,
            "type": entry.type,
            "userId": entry.user_id,
            "payload": json.dumps(entry.payload, ensure_ascii=False, default=str),
        })

    def _query_all(self, newest_first: bool) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            "KeyConditionExpression": f"{self.pk_name} = :pk",
            "ExpressionAttributeValues": {":pk": AUDIT_PK},
            "ScanIndexForward": not newest_first,
        }
        while True:
            response = self.table.query(**params)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            params["ExclusiveStartKey"] = last_key

    @staticmethod
    def _entry(item: Dict[str, Any]) -> AuditEntry:
        raw = item.get("payload") or "{}"
        try:
            payload = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except json.JSONDecodeError:
            payload = {"rawPayload": raw}
        return AuditEntry(
            id=item.get("id", ""),
            timestamp=item.get("timestamp", ""),
            type=item.get("type", ""),
            user_id=item.get("userId", DEFAULT_USER_ID),
            payload=payload,
        )

    def list(self, newest_first: bool = True) -> List[AuditEntry]:
        return [self._entry(item) for item in self._query_all(newest_first)]

    def clear(self, user_id: str) -> int:
        doomed = [item for item in self._query_all(newest_first=False) if item.get("userId") == user_id]
        with self.table.batch_writer() as batch:
            for item in doomed:
                batch.delete_item(Key={self.pk_name: item[self.pk_name], self.sk_name: item[self.sk_name]})
        logger.info(f"Cleared {len(doomed)} audit entries for user={user_id}")
        return len(doomed)

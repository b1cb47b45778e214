# =============================================================================
# Audit Log - Append + Fan-out
# =============================================================================
# Every terminal outcome of handling an event produces one entry. Each
# append publishes a content-free "changed" signal so other processes can
# refresh their views.
# =============================================================================

import logging
from typing import Any, Callable, Dict, List
from concierge.audit.store import AuditEntry, AuditEntryType, DEFAULT_USER_ID
from concierge.notifications.fanout import AUDIT_ENTRY_ADDED_CHANNEL

logger = logging.getLogger(__name__)

ResponseHandler = Callable[[Dict[str, Any]], None]

RESPONSE_TYPES = (
    AuditEntryType.RESPONSE,
    AuditEntryType.DECISION,
    AuditEntryType.CAPABILITY_REQUEST,
)


class AuditLog:

    def __init__(self, store, notifier=None):
        self.store = store
        self.notifier = notifier
        self._on_response: List[ResponseHandler] = []

    def append(self, entry_type: str, payload: Dict[str, Any], user_id: str = DEFAULT_USER_ID) -> AuditEntry:
        """Persist one entry, then signal subscribers."""
        entry = AuditEntry(type=entry_type, payload=dict(payload), user_id=user_id or DEFAULT_USER_ID)
        self.store.append(entry)
        logger.info(f"Audit entry {entry.id} type={entry.type}")
        if self.notifier is not None:
            self.notifier.publish(AUDIT_ENTRY_ADDED_CHANNEL, "1")
        return entry

    def list(self, newest_first: bool = True) -> List[AuditEntry]:
        return self.store.list(newest_first=newest_first)

    def clear(self, user_id: str) -> int:
        removed = self.store.clear(user_id)
        if self.notifier is not None:
            self.notifier.publish(AUDIT_ENTRY_ADDED_CHANNEL, "1")
        return removed

    def on_response_received(self, handler: ResponseHandler) -> Callable[[], None]:
        """Listen for responses emitted in this process. Returns an unsubscribe function."""
        self._on_response.append(handler)

        def unsubscribe() -> None:
            self._on_response = [h for h in self._on_response if h is not handler]

        return unsubscribe

    def emit_response(self, payload: Dict[str, Any], user_id: str = DEFAULT_USER_ID) -> AuditEntry:
        """
        Record a user-facing outcome and notify local listeners.

        payload["type"] selects the entry type: response, decision or
        capability_request.
        """
        entry_type = payload.get("type")
        if entry_type not in RESPONSE_TYPES:
            raise ValueError(f"Unsupported response type: {entry_type}")
        entry = self.append(entry_type, payload, user_id=user_id)
        for handler in list(self._on_response):
            try:
                handler(payload)
            except Exception as e:
                logger.exception(f"Response listener failed: {e}")
        return entry

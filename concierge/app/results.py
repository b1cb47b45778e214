# =============================================================================
# Result Delivery (API process)
# =============================================================================
# Final results keyed by event id are pushed to real-time clients on the
# chat-result channel and recorded once in the audit log.
# =============================================================================

import json
import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, List
from concierge.audit.store import AuditEntryType
from concierge.notifications.fanout import CHAT_RESULT_CHANNEL

logger = logging.getLogger(__name__)

MAX_TRACKED_EVENTS = 1000


class ResultRelay:

    def __init__(self, audit_log, notifier, max_tracked: int = MAX_TRACKED_EVENTS):
        self.audit_log = audit_log
        self.notifier = notifier
        self.max_tracked = max_tracked
        self._responses: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        self._lock = threading.Lock()

    def deliver(self, event_id: str, message: Dict[str, Any]) -> None:
        text = message.get("text", "")
        outbound = {"role": "assistant", **message}
        with self._lock:
            self._responses.setdefault(event_id, []).append({"role": "assistant", "text": text})
            self._responses.move_to_end(event_id)
            while len(self._responses) > self.max_tracked:
                self._responses.popitem(last=False)
        self.notifier.publish(
            CHAT_RESULT_CHANNEL,
            json.dumps({"eventId": event_id, "message": outbound}, ensure_ascii=False, default=str),
        )
        payload = {"type": AuditEntryType.RESPONSE, "text": text, "eventId": event_id}
        if message.get("userInput"):
            payload["userInput"] = message["userInput"]
        self.audit_log.emit_response(payload, user_id=message.get("userId") or "default")
        logger.info(f"Delivered result for event {event_id}")

    def responses_for(self, event_id: str) -> List[Dict[str, Any]]:
        """Results received so far for one event (for polling clients)."""
        with self._lock:
            return list(self._responses.get(event_id, []))

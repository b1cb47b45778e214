# =============================================================================
# Events - Canonical Event Container
# =============================================================================
# All inbound surfaces (web UI, chat channels, email, scheduler, internal
# signals) are normalized into a NormalizedEvent with a tagged payload.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid


class EventType:
    """Well-known event type strings."""
    MESSAGE_SENT = "message.sent"
    TASK_SCHEDULED = "task.scheduled"
    TURN_COMPLETED = "chat.turn_completed"
    INTERNAL = "internal"


class PayloadKind(str, Enum):
    """Variants of a normalized payload."""
    MESSAGE = "message"
    SCHEDULED_TASK = "scheduled_task"
    INTEGRATION_EVENT = "integration_event"
    INTERNAL = "internal"


@dataclass
class RawDispatchInput:
    """Producer-supplied dispatch request, before normalization."""
    source: str
    type: str
    payload: Dict[str, Any]
    priority: Optional[int] = None

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "RawDispatchInput":
        """Build from a request body. Call validate_raw_input() first."""
        return cls(
            source=body["source"],
            type=body["type"],
            payload=body["payload"],
            priority=body.get("priority"),
        )


@dataclass(frozen=True)
class MessagePayload:
    text: str
    user_id: str
    attachments: Optional[List[str]] = None
    attachment_contents: Optional[List[Dict[str, str]]] = None
    channel_meta: Optional[Dict[str, Any]] = None
    source_message_type: Optional[str] = None

    kind = PayloadKind.MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind.value, "text": self.text, "userId": self.user_id}
        if self.attachments:
            d["attachments"] = list(self.attachments)
        if self.attachment_contents:
            d["attachmentContents"] = [dict(a) for a in self.attachment_contents]
        if self.channel_meta:
            d["channelMeta"] = dict(self.channel_meta)
        if self.source_message_type:
            d["sourceMessageType"] = self.source_message_type
        return d


@dataclass(frozen=True)
class ScheduledTaskPayload:
    """
    A task fired by the scheduler.

    Both ``execute_at`` and ``cron`` may be present, or neither. Use
    ``schedule_mode`` to resolve: recurrence wins over a one-shot instant,
    and a task with neither is malformed (``None``).
    """
    intent: str
    context: Dict[str, Any] = field(default_factory=dict)
    execute_at: Optional[str] = None
    cron: Optional[str] = None

    kind = PayloadKind.SCHEDULED_TASK

    @property
    def schedule_mode(self) -> Optional[str]:
        if self.cron:
            return "recurring"
        if self.execute_at:
            return "one_shot"
        return None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind.value,
            "intent": self.intent,
            "context": dict(self.context),
        }
        if self.execute_at is not None:
            d["execute_at"] = self.execute_at
        if self.cron:
            d["cron"] = self.cron
        return d


@dataclass(frozen=True)
class IntegrationEventPayload:
    integration_id: str
    original_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    kind = PayloadKind.INTEGRATION_EVENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "integrationId": self.integration_id,
            "originalType": self.original_type,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class InternalPayload:
    data: Dict[str, Any] = field(default_factory=dict)

    kind = PayloadKind.INTERNAL

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "data": dict(self.data)}


NormalizedPayload = Union[MessagePayload, ScheduledTaskPayload, IntegrationEventPayload, InternalPayload]


def payload_from_dict(d: Dict[str, Any]) -> NormalizedPayload:
    """Rebuild a payload variant from its serialized form (broker transport)."""
    kind = d.get("kind")
    if kind == PayloadKind.MESSAGE.value:
        return MessagePayload(
            text=d.get("text", ""),
            user_id=d.get("userId", "default"),
            attachments=d.get("attachments"),
            attachment_contents=d.get("attachmentContents"),
            channel_meta=d.get("channelMeta"),
            source_message_type=d.get("sourceMessageType"),
        )
    if kind == PayloadKind.SCHEDULED_TASK.value:
        return ScheduledTaskPayload(
            intent=d.get("intent", ""),
            context=d.get("context") or {},
            execute_at=d.get("execute_at"),
            cron=d.get("cron"),
        )
    if kind == PayloadKind.INTEGRATION_EVENT.value:
        return IntegrationEventPayload(
            integration_id=d.get("integrationId", ""),
            original_type=d.get("originalType", ""),
            payload=d.get("payload") or {},
        )
    return InternalPayload(data=d.get("data") or {})


@dataclass(frozen=True)
class NormalizedEvent:
    """
    Canonical unit flowing through the pipeline.

    Attributes:
        id: Correlation key between dispatch and result delivery (immutable)
        source: Origin of the event (api, slack, email, scheduler, mcp, ...)
        type: Event type string (message.sent, task.scheduled, ...)
        payload: Tagged payload variant
        timestamp: Creation instant (ISO-8601, UTC)
        priority: Higher is more urgent
    """
    source: str
    type: str
    payload: NormalizedPayload
    priority: int = 5
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def kind(self) -> PayloadKind:
        return self.payload.kind

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to a JSON-safe dictionary."""
        return {
            "id": self.id,
            "source": self.source,
            "type": self.type,
            "timestamp": self.timestamp,
            "priority": self.priority,
            "payload": self.payload.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NormalizedEvent":
        """Rebuild an event received from the broker."""
        return cls(
            id=d["id"],
            source=d["source"],
            type=d["type"],
            timestamp=d.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            priority=int(d.get("priority", 5)),
            payload=payload_from_dict(d.get("payload") or {}),
        )

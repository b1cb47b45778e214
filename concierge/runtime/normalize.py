# =============================================================================
# Normalizer - Raw Dispatch Input -> NormalizedEvent
# =============================================================================
# Shared by the API, channel workers and the router so any process can
# enqueue directly. Normalization never fails: unexpected field shapes
# degrade to safe defaults one field at a time.
# =============================================================================

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from concierge.runtime.events import (
    EventType,
    IntegrationEventPayload,
    InternalPayload,
    MessagePayload,
    NormalizedEvent,
    NormalizedPayload,
    RawDispatchInput,
    ScheduledTaskPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"

DEFAULT_PRIORITY: Dict[str, int] = {
    EventType.MESSAGE_SENT: 10,
    EventType.INTERNAL: 8,
    EventType.TASK_SCHEDULED: 5,
}
FALLBACK_PRIORITY = 5

CHANNEL_DIRECTNESS = ("direct", "neutral")


class DispatchValidationError(ValueError):
    """Raised when a dispatch request is missing required fields."""


def validate_raw_input(body: Any) -> RawDispatchInput:
    """
    Boundary check for dispatch submission.

    Raises:
        DispatchValidationError: source/type missing or payload not an object
    """
    if not isinstance(body, dict):
        raise DispatchValidationError("Invalid body: need source, type, payload")
    source = body.get("source")
    event_type = body.get("type")
    payload = body.get("payload")
    if not isinstance(source, str) or not source.strip():
        raise DispatchValidationError("Invalid body: 'source' must be a non-empty string")
    if not isinstance(event_type, str) or not event_type.strip():
        raise DispatchValidationError("Invalid body: 'type' must be a non-empty string")
    if not isinstance(payload, dict):
        raise DispatchValidationError("Invalid body: 'payload' must be an object")
    return RawDispatchInput.from_dict(body)


def normalize_priority(raw: RawDispatchInput) -> int:
    """Explicit priority if it is an integer, else the default for the type."""
    priority = raw.priority
    if isinstance(priority, int) and not isinstance(priority, bool):
        return priority
    return DEFAULT_PRIORITY.get(raw.type, FALLBACK_PRIORITY)


def _string_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _stripped(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _attachment_contents(value: Any) -> Optional[List[Dict[str, str]]]:
    if not isinstance(value, list):
        return None
    kept = [
        a for a in value
        if isinstance(a, dict)
        and isinstance(a.get("name"), str)
        and isinstance(a.get("contentType"), str)
        and isinstance(a.get("data"), str)
    ]
    return kept or None


def _attachment_ids(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    kept = [a for a in value if isinstance(a, str)]
    return kept or None


def _channel_meta(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    if not value.get("channel") or value.get("directness") not in CHANNEL_DIRECTNESS:
        return None
    return value


def _message_payload(payload: Dict[str, Any]) -> MessagePayload:
    return MessagePayload(
        text=_string_or(payload.get("text"), ""),
        user_id=_string_or(payload.get("userId"), DEFAULT_USER_ID),
        attachments=_attachment_ids(payload.get("attachments")),
        attachment_contents=_attachment_contents(payload.get("attachmentContents")),
        channel_meta=_channel_meta(payload.get("channelMeta")),
        source_message_type="audio" if payload.get("sourceMessageType") == "audio" else None,
    )


def _scheduled_task_payload(payload: Dict[str, Any]) -> ScheduledTaskPayload:
    context = payload.get("context")
    return ScheduledTaskPayload(
        intent=_string_or(payload.get("intent"), ""),
        context=context if isinstance(context, dict) else {},
        execute_at=_stripped(payload.get("execute_at")),
        cron=_stripped(payload.get("cron")),
    )


def normalize_payload(source: str, event_type: str, payload: Dict[str, Any]) -> NormalizedPayload:
    """
    Select the payload variant from type/source.

    Unrecognized types fall back to the internal variant rather than being
    rejected.
    """
    if not isinstance(payload, dict):
        payload = {}

    if event_type == EventType.MESSAGE_SENT:
        return _message_payload(payload)

    if event_type == EventType.TASK_SCHEDULED:
        return _scheduled_task_payload(payload)

    if event_type == EventType.TURN_COMPLETED:
        return InternalPayload(data=payload)

    if (
        source == "mcp"
        and isinstance(payload.get("integrationId"), str)
        and isinstance(payload.get("originalType"), str)
    ):
        inner = payload.get("payload")
        return IntegrationEventPayload(
            integration_id=payload["integrationId"],
            original_type=payload["originalType"],
            payload=inner if isinstance(inner, dict) else {},
        )

    if event_type != EventType.INTERNAL:
        logger.debug(f"Unrecognized event type={event_type} source={source}; wrapping as internal")
    return InternalPayload(data=payload)


def normalize(raw: RawDispatchInput, correlation_id: Optional[str] = None) -> NormalizedEvent:
    """
    Convert a raw dispatch request into a NormalizedEvent.

    Args:
        raw: Producer-supplied input
        correlation_id: Reused as the event id so caller and result can be matched

    Returns:
        NormalizedEvent (never raises)
    """
    return NormalizedEvent(
        id=correlation_id or str(uuid.uuid4()),
        source=raw.source,
        type=raw.type,
        timestamp=datetime.now(timezone.utc).isoformat(),
        priority=normalize_priority(raw),
        payload=normalize_payload(raw.source, raw.type, raw.payload),
    )


def _string_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _string_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_string_keys(v) for v in value]
    return value


def event_key(event: NormalizedEvent) -> str:
    """Deterministic dedup key: source, type and the normalized payload content."""
    # Map keys may be non-strings from in-process producers; sort_keys needs one type
    body = json.dumps(_string_keys(event.payload.to_dict()), sort_keys=True, ensure_ascii=False, default=str)
    return f"{event.source}:{event.type}:{body}"

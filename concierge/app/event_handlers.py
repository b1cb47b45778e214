# =============================================================================
# Event Handlers
# =============================================================================
# Shared by the API (local mode) and by Worker Loops (distributed mode), so
# the responder only ever runs in one place per deployment.
#
# The responder (reasoning / response generation) is an external
# collaborator:
#     responder(text, {"userId", "source", "attachments", "channelMeta"})
#         -> {"text", "lastAgentName"?, "handoffs"?, "capabilityRequest"?, "decision"?}
# =============================================================================

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from concierge.audit.store import AuditEntryType
from concierge.notifications.fanout import RESPONSE_DELIVERY_CHANNEL
from concierge.runtime.events import EventType, NormalizedEvent, PayloadKind, RawDispatchInput

logger = logging.getLogger(__name__)

Responder = Callable[[str, Dict[str, Any]], Dict[str, Any]]
ResultSink = Callable[[str, Dict[str, Any]], None]

DEFAULT_AGENT_NAME = "Concierge"
EMPTY_RESPONSE_TEXT = "I didn't get a clear response. Try rephrasing or check the model settings."
EMPTY_TASK_RESPONSE_TEXT = "Scheduled task completed (no clear response from agent)."


@dataclass
class EventHandlerDeps:
    """
    Collaborators for the built-in handlers.

    Attributes:
        router: EventRouter to register on
        dispatcher: Used to emit follow-up events (chat.turn_completed)
        audit_log: AuditLog for outcome records
        responder: Reasoning collaborator
        deliver_result: For api-source chats. API process: ResultRelay.deliver;
            worker process: ResultRelayClient.deliver
        notifier: Fan-out used to hand replies to channel adapters
        record_turn: Persists a finished turn to chat history (UI source only)
    """
    router: Any
    dispatcher: Any
    audit_log: Any
    responder: Responder
    deliver_result: Optional[ResultSink] = None
    notifier: Any = None
    record_turn: Optional[Callable[[Dict[str, Any]], None]] = None


def _handoffs(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    handoffs = result.get("handoffs") or []
    return [h for h in handoffs if isinstance(h, dict)]


def register_event_handlers(deps: EventHandlerDeps) -> List[Callable[[], None]]:
    """Register turn, message, scheduled-task and integration handlers. Returns unregister functions."""

    audit_log = deps.audit_log

    def _record_side_outcomes(event: NormalizedEvent, result: Dict[str, Any], user_input: str, user_id: str) -> None:
        capability = result.get("capabilityRequest")
        if isinstance(capability, dict):
            audit_log.emit_response({
                "type": AuditEntryType.CAPABILITY_REQUEST,
                "integration": capability.get("integration", ""),
                "capability": capability.get("capability", ""),
                "reason": capability.get("reason", ""),
                "eventId": event.id,
                "userInput": user_input,
            }, user_id=user_id)
        decision = result.get("decision")
        if isinstance(decision, dict):
            audit_log.emit_response({
                "type": AuditEntryType.DECISION,
                "decision": decision,
                "eventId": event.id,
                "userInput": user_input,
            }, user_id=user_id)

    def _reply(event: NormalizedEvent, text: str, user_id: str, user_input: str, agent_name: Optional[str] = None) -> None:
        """Route the final text: relay for UI chats, channel delivery otherwise. One response entry either way."""
        if event.source == "api" and deps.deliver_result is not None:
            message = {"text": text, "userId": user_id, "userInput": user_input}
            if agent_name:
                message["lastAgentName"] = agent_name
            deps.deliver_result(event.id, message)
            return

        audit_log.emit_response({
            "type": AuditEntryType.RESPONSE,
            "text": text,
            "eventId": event.id,
            "userInput": user_input,
        }, user_id=user_id)

        channel_meta = getattr(event.payload, "channel_meta", None)
        if channel_meta and deps.notifier is not None:
            deps.notifier.publish(
                RESPONSE_DELIVERY_CHANNEL,
                json.dumps({**channel_meta, "text": text, "eventId": event.id}, ensure_ascii=False, default=str),
            )

    def _turn_completed(user_id: str, user_text: str, assistant_text: str, attachments: Optional[List[str]]) -> None:
        data: Dict[str, Any] = {"userId": user_id, "userText": user_text, "assistantText": assistant_text}
        if attachments:
            data["userAttachmentIds"] = list(attachments)
        deps.dispatcher.dispatch(RawDispatchInput(source="api", type=EventType.TURN_COMPLETED, payload=data))

    # -------------------------------------------------------------------------
    # chat.turn_completed: persist the turn for the UI (api source only)
    # -------------------------------------------------------------------------
    def handle_turn_completed(event: NormalizedEvent) -> None:
        if event.type != EventType.TURN_COMPLETED or event.kind != PayloadKind.INTERNAL or event.source != "api":
            return
        if deps.record_turn is not None:
            deps.record_turn(event.payload.data)

    # -------------------------------------------------------------------------
    # message.sent: run the responder, reply, record
    # -------------------------------------------------------------------------
    def handle_message(event: NormalizedEvent) -> None:
        if event.kind != PayloadKind.MESSAGE:
            return
        payload = event.payload
        context = {
            "userId": payload.user_id,
            "source": event.source,
            "attachments": payload.attachments or [],
            "attachmentContents": payload.attachment_contents or [],
            "channelMeta": payload.channel_meta or {},
        }
        try:
            result = deps.responder(payload.text, context) or {}
        except Exception as e:
            logger.exception(f"Responder failed for event {event.id}: {e}")
            text = f"Something went wrong: {e}. Check API logs."
            _reply(event, text, payload.user_id, payload.text)
            _turn_completed(payload.user_id, payload.text, text, payload.attachments)
            return

        text = (result.get("text") or "").strip() or EMPTY_RESPONSE_TEXT
        agent_name = result.get("lastAgentName") or DEFAULT_AGENT_NAME
        audit_log.append(AuditEntryType.AGENT_RUN, {
            "eventId": event.id,
            "userInput": payload.text,
            "response": text,
            "lastAgentName": agent_name,
            "handoffs": _handoffs(result),
        }, user_id=payload.user_id)
        _record_side_outcomes(event, result, payload.text, payload.user_id)
        _reply(event, text, payload.user_id, payload.text, agent_name)
        _turn_completed(payload.user_id, payload.text, text, payload.attachments)

    # -------------------------------------------------------------------------
    # task.scheduled: resolve schedule mode, run, record
    # -------------------------------------------------------------------------
    def handle_scheduled_task(event: NormalizedEvent) -> None:
        if event.kind != PayloadKind.SCHEDULED_TASK:
            return
        task = event.payload
        record = {
            "eventId": event.id,
            "intent": task.intent,
            "context": task.context,
            "execute_at": task.execute_at,
            "cron": task.cron,
            "mode": task.schedule_mode,
        }
        if task.schedule_mode is None:
            logger.warning(f"Rejecting scheduled task {event.id}: neither execute_at nor cron set")
            audit_log.append(AuditEntryType.SCHEDULED_TASK, {
                **record,
                "status": "rejected",
                "error": "Scheduled task needs execute_at or cron",
            })
            return

        context_str = ", ".join(f"{k}={v}" for k, v in task.context.items()) or "(none)"
        text = f"Scheduled task: {task.intent}. Context: {context_str}."
        try:
            result = deps.responder(text, {"userId": "default", "source": "scheduler"}) or {}
        except Exception as e:
            logger.exception(f"Scheduled task {event.id} failed: {e}")
            audit_log.append(AuditEntryType.SCHEDULED_TASK, {**record, "status": "failed", "error": str(e)})
            _reply(event, f"Scheduled task failed: {e}. Check API logs.", "default", text)
            return

        response = (result.get("text") or "").strip() or EMPTY_TASK_RESPONSE_TEXT
        audit_log.append(AuditEntryType.SCHEDULED_TASK, {**record, "status": "completed"})
        audit_log.append(AuditEntryType.AGENT_RUN, {
            "eventId": event.id,
            "userInput": text,
            "response": response,
            "lastAgentName": result.get("lastAgentName") or DEFAULT_AGENT_NAME,
            "handoffs": _handoffs(result),
        })
        _record_side_outcomes(event, result, text, "default")
        _reply(event, response, "default", text)

    # -------------------------------------------------------------------------
    # integration_event: record the external callback
    # -------------------------------------------------------------------------
    def handle_integration_event(event: NormalizedEvent) -> None:
        if event.kind != PayloadKind.INTEGRATION_EVENT:
            return
        audit_log.append("integration_event", {
            "eventId": event.id,
            "integrationId": event.payload.integration_id,
            "originalType": event.payload.original_type,
            "payload": event.payload.payload,
        })

    return [
        deps.router.register(handle_turn_completed),
        deps.router.register(handle_message),
        deps.router.register(handle_scheduled_task),
        deps.router.register(handle_integration_event),
    ]

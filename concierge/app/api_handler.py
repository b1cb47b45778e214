# =============================================================================
# API Gateway Handler
# =============================================================================
# Entry point for API Gateway HTTP API (v2) and REST API (v1) requests.
# Parses the request, routes it to a small handler table, formats the
# response.
#
# Routes:
#   GET    /health
#   POST   /api/dispatch
#   POST   /api/internal/dispatch      (X-Internal-Secret)
#   POST   /api/internal/chat-result   (X-Internal-Secret)
#   POST   /api/internal/reload        (X-Internal-Secret)
#   GET    /api/audit
#   DELETE /api/audit?userId=
#   GET    /api/safety/kill-switch
#   POST   /api/safety/kill-switch
# =============================================================================

import base64
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
from concierge.app.relay_client import SECRET_HEADER
from concierge.app.results import ResultRelay
from concierge.runtime.normalize import DispatchValidationError
from concierge.runtime.queue import QueueFullError

logger = logging.getLogger(__name__)


def api_response(data: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    """Format response for API Gateway HTTP API."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": f"Content-Type,Authorization,{SECRET_HEADER}",
            "Access-Control-Allow-Methods": "GET,POST,DELETE,OPTIONS",
        },
        "body": json.dumps(data, ensure_ascii=False, default=str),
    }


def error_response(message: str, status_code: int) -> Dict[str, Any]:
    return api_response({"error": message}, status_code)


@dataclass
class Request:
    """The parts of an API Gateway event the routes need."""
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "Request":
        request_context = event.get("requestContext") or {}
        method = (
            request_context.get("http", {}).get("method")
            or event.get("httpMethod")
            or request_context.get("httpMethod")
            or "GET"
        )
        path = event.get("rawPath") or event.get("path") or "/"
        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
        body = event.get("body") or ""
        if body and event.get("isBase64Encoded"):
            try:
                body = base64.b64decode(body).decode("utf-8")
            except ValueError as e:
                raise DispatchValidationError(f"Invalid base64 body: {e}")
        return cls(
            method=method.upper(),
            path=path.rstrip("/") or "/",
            headers=headers,
            query=dict(event.get("queryStringParameters") or {}),
            body=body,
        )

    def json(self) -> Any:
        """Parsed JSON body. Raises DispatchValidationError when it isn't JSON."""
        if not self.body:
            return {}
        try:
            return json.loads(self.body)
        except json.JSONDecodeError as e:
            raise DispatchValidationError(f"Invalid JSON body: {e}")


class ApiApp:
    """
    Routes requests against one process's Deps.

    Args:
        deps: Deps container for this process
        result_relay: Receives results from workers; built from deps when omitted
    """

    def __init__(self, deps, result_relay: Optional[ResultRelay] = None):
        self.deps = deps
        self.result_relay = result_relay or ResultRelay(deps.audit_log, deps.notifier)
        self.routes: Dict[Tuple[str, str], Callable[[Request], Dict[str, Any]]] = {
            ("GET", "/health"): self.health,
            ("POST", "/api/dispatch"): self.dispatch,
            ("POST", "/api/internal/dispatch"): self.internal_dispatch,
            ("POST", "/api/internal/chat-result"): self.chat_result,
            ("POST", "/api/internal/reload"): self.reload,
            ("GET", "/api/audit"): self.list_audit,
            ("DELETE", "/api/audit"): self.clear_audit,
            ("GET", "/api/safety/kill-switch"): self.get_kill_switch,
            ("POST", "/api/safety/kill-switch"): self.set_kill_switch,
        }

    def __call__(self, event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        try:
            request = Request.from_event(event)
        except DispatchValidationError as e:
            logger.warning(f"Rejecting request: {e}")
            return error_response(str(e), 400)
        logger.info(f"API {request.method} {request.path}")

        if request.method == "OPTIONS":
            return api_response({}, 204)

        route = self.routes.get((request.method, request.path))
        if route is None:
            return error_response(f"Not found: {request.method} {request.path}", 404)

        try:
            return route(request)
        except DispatchValidationError as e:
            return error_response(str(e), 400)
        except QueueFullError as e:
            logger.warning(f"Rejecting dispatch: {e}")
            return error_response(str(e), 503)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
            return error_response("Internal error", 500)

    # ==========================================================================
    # Internal secret
    # ==========================================================================

    def _authorized(self, request: Request) -> bool:
        secret = self.deps.config["INTERNAL_SECRET"]
        if not secret:
            return True
        provided = request.headers.get(SECRET_HEADER.lower(), "")
        return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))

    # ==========================================================================
    # Routes
    # ==========================================================================

    def health(self, request: Request) -> Dict[str, Any]:
        return api_response({"status": "ok", "killSwitch": self.deps.kill_switch.get()})

    def dispatch(self, request: Request) -> Dict[str, Any]:
        correlation_id = request.headers.get("x-correlation-id")
        event_id = self.deps.dispatcher.dispatch(request.json(), correlation_id=correlation_id)
        return api_response({"id": event_id}, 202)

    def internal_dispatch(self, request: Request) -> Dict[str, Any]:
        if not self._authorized(request):
            return error_response("Unauthorized", 401)
        return self.dispatch(request)

    def chat_result(self, request: Request) -> Dict[str, Any]:
        if not self._authorized(request):
            return error_response("Unauthorized", 401)
        body = request.json()
        event_id = body.get("eventId") if isinstance(body, dict) else None
        message = body.get("message") if isinstance(body, dict) else None
        if not isinstance(event_id, str) or not event_id or not isinstance(message, dict):
            return error_response("eventId and message required", 400)
        self.result_relay.deliver(event_id, message)
        return api_response({"ok": True})

    def reload(self, request: Request) -> Dict[str, Any]:
        if not self._authorized(request):
            return error_response("Unauthorized", 401)
        body = request.json()
        scopes = body.get("scopes") if isinstance(body, dict) else None
        if not isinstance(scopes, list) or not scopes:
            return error_response("scopes must be a non-empty list", 400)
        try:
            flagged = self.deps.reload_flags.set_flags(scopes)
        except ValueError as e:
            return error_response(str(e), 400)
        return api_response({"scopes": flagged})

    def list_audit(self, request: Request) -> Dict[str, Any]:
        entries = [entry.to_dict() for entry in self.deps.audit_log.list(newest_first=True)]
        return api_response({"entries": entries})

    def clear_audit(self, request: Request) -> Dict[str, Any]:
        user_id = (request.query.get("userId") or "").strip()
        if not user_id:
            return error_response("userId required", 400)
        removed = self.deps.audit_log.clear(user_id)
        return api_response({"removed": removed})

    def get_kill_switch(self, request: Request) -> Dict[str, Any]:
        return api_response({"enabled": self.deps.kill_switch.get()})

    def set_kill_switch(self, request: Request) -> Dict[str, Any]:
        body = request.json()
        enabled = body.get("enabled") if isinstance(body, dict) else None
        if not isinstance(enabled, bool):
            return error_response("enabled must be a boolean", 400)
        self.deps.kill_switch.set(enabled)
        logger.warning(f"Kill switch {'ENGAGED' if enabled else 'released'}")
        if not enabled:
            # Resume whatever piled up while paused.
            self.deps.schedule_drain()
        return api_response({"enabled": enabled})


_app: Optional[ApiApp] = None


def api_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda entry point. Deps are built on the first invocation of each
    container and reused for later ones.
    """
    global _app
    if _app is None:
        from concierge.app.bootstrap import build_api_app
        _app = build_api_app()
    return _app(event, context)

# =============================================================================
# Process Bootstrap
# =============================================================================
# Wires one process's Deps to the event handlers and picks where results go:
# - API process: results go straight to the in-process ResultRelay
# - Worker process: results go over HTTP to the API (ResultRelayClient)
#
# run_service() is the shared bootstrap for long-lived adapter processes
# (Slack, email, WhatsApp, scheduler): start, watch reload flags, block
# until SIGINT/SIGTERM, stop.
# =============================================================================

import importlib
import logging
import signal
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional
from concierge.app.api_handler import ApiApp
from concierge.app.event_handlers import EventHandlerDeps, Responder, register_event_handlers
from concierge.app.relay_client import relay_clients_from_config
from concierge.app.results import ResultRelay
from concierge.runtime.deps import Deps, configure_logging, create_deps

logger = logging.getLogger(__name__)


def echo_responder(text: str, context: Dict[str, Any]) -> Dict[str, Any]:
    """Placeholder responder used when RESPONDER is not configured."""
    return {"text": f"Received: {text}", "lastAgentName": "Echo", "handoffs": []}


def load_responder(path: str) -> Responder:
    """Resolve "package.module:function" to a responder callable."""
    if not path:
        return echo_responder
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"RESPONDER must look like 'module:function', got {path!r}")
    return getattr(importlib.import_module(module_name), attr)


def build_api_app(deps: Optional[Deps] = None, responder: Optional[Responder] = None) -> ApiApp:
    """
    API process. Handlers are registered here only in local mode; in
    distributed mode Worker Loops own handler execution.
    """
    deps = deps or create_deps()
    relay = ResultRelay(deps.audit_log, deps.notifier)
    if not deps.distributed:
        register_event_handlers(EventHandlerDeps(
            router=deps.router,
            dispatcher=deps.dispatcher,
            audit_log=deps.audit_log,
            responder=responder or load_responder(deps.config["RESPONDER"]),
            deliver_result=relay.deliver,
            notifier=deps.notifier,
        ))
    logger.info(f"API ready (mode={'distributed' if deps.distributed else 'local'})")
    return ApiApp(deps, result_relay=relay)


def build_worker(deps: Optional[Deps] = None, responder: Optional[Responder] = None, session=None) -> Deps:
    """Worker process: register handlers that relay api-source results back over HTTP."""
    deps = deps or create_deps()
    if not deps.distributed:
        raise ValueError("EVENT_QUEUE_URL is required to run a worker")
    _, result_client = relay_clients_from_config(deps.config, session=session)
    register_event_handlers(EventHandlerDeps(
        router=deps.router,
        dispatcher=deps.dispatcher,
        audit_log=deps.audit_log,
        responder=responder or load_responder(deps.config["RESPONDER"]),
        deliver_result=result_client.deliver,
        notifier=deps.notifier,
    ))
    return deps


def wait_for_shutdown(stop_event: Optional[threading.Event] = None) -> threading.Event:
    """Block until SIGINT/SIGTERM (or stop_event is set elsewhere)."""
    stop_event = stop_event or threading.Event()

    def _signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    previous = {sig: signal.signal(sig, _signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return stop_event


def run_service(
    name: str,
    scopes: Iterable[str],
    start: Callable[[Deps], Any],
    stop: Callable[[], Any],
    on_reload: Callable[[List[str]], Any],
    deps: Optional[Deps] = None,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """
    Run a long-lived adapter until it is signalled to stop.

    Args:
        name: Service name for logs
        scopes: Reload scopes this service watches
        start: Called with deps once at startup
        stop: Called once at shutdown
        on_reload: Called with the scopes that fired
        deps: Defaults to create_deps()
        stop_event: Lets callers (and tests) stop the service without a signal
    """
    deps = deps or create_deps()
    configure_logging(deps)
    logger.info(f"Starting {name}")
    start(deps)
    watcher = deps.reload_watcher(scopes, on_reload).start()
    try:
        wait_for_shutdown(stop_event)
    finally:
        watcher.stop()
        stop()
        logger.info(f"{name} stopped")

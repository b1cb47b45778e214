# =============================================================================
# Worker Entry Points
# =============================================================================
# Two forms of the same consumer:
# - worker_handler(event, context): SQS-triggered Lambda. Records that fail
#   are returned as batchItemFailures so only they are redelivered.
# - run_worker(deps): long-running process polling SQS until SIGINT/SIGTERM.
# =============================================================================

import json
import logging
import threading
from typing import Any, Dict, List, Optional
from concierge.app.bootstrap import build_worker, wait_for_shutdown
from concierge.runtime.deps import Deps, configure_logging
from concierge.runtime.events import NormalizedEvent

logger = logging.getLogger(__name__)

_deps: Optional[Deps] = None


def handle_records(records: List[Dict[str, Any]], deps: Deps) -> Dict[str, Any]:
    """
    Run the router for each SQS record, highest priority first.

    Returns:
        {"batchItemFailures": [{"itemIdentifier": messageId}, ...]}
    """
    batch = []
    for record in records:
        message_id = record.get("messageId", "")
        try:
            event = NormalizedEvent.from_dict(json.loads(record.get("body", "")))
        except (ValueError, KeyError, TypeError) as e:
            # Redelivery cannot fix a bad body.
            logger.warning(f"Dropping undecodable record {message_id}: {e}")
            continue
        batch.append((event, message_id))

    batch.sort(key=lambda pair: pair[0].priority, reverse=True)

    failures = []
    for event, message_id in batch:
        logger.info(f"Event received: type={event.type} source={event.source} id={event.id}")
        try:
            deps.router.run_handlers_for_event(event)
        except Exception as e:
            logger.exception(f"Record {message_id} (event {event.id}) failed: {e}")
            failures.append({"itemIdentifier": message_id})

    return {"batchItemFailures": failures}


def worker_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """SQS event source mapping entry point (ReportBatchItemFailures enabled)."""
    global _deps
    if _deps is None:
        _deps = build_worker()
        configure_logging(_deps)
    records = event.get("Records", [])
    logger.info(f"WORKER_HANDLER received {len(records)} record(s)")
    return handle_records(records, _deps)


def run_worker(deps: Optional[Deps] = None, stop_event: Optional[threading.Event] = None) -> None:
    """Block polling the broker until signalled."""
    deps = build_worker(deps)
    configure_logging(deps)
    loop = deps.worker_loop()
    thread = threading.Thread(target=loop.run, name="worker-loop", daemon=True)
    thread.start()
    try:
        wait_for_shutdown(stop_event)
    finally:
        loop.stop()
        # A long poll in flight returns within WORKER_WAIT_SECONDS.
        thread.join(timeout=deps.config["WORKER_WAIT_SECONDS"] + 5)

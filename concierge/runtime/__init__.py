# =============================================================================
# Runtime Package - Dispatch Pipeline Core
# =============================================================================
# normalize -> dedup -> enqueue -> router -> handlers
# plus the shared coordination primitives (kill switch, reload flags).
# =============================================================================

from concierge.runtime.events import NormalizedEvent, RawDispatchInput, EventType, PayloadKind
from concierge.runtime.normalize import normalize, event_key, DispatchValidationError
from concierge.runtime.dispatch import Dispatcher
from concierge.runtime.router import EventRouter
from concierge.runtime.queue import LocalEventQueue, SqsEventQueue, QueueFullError
from concierge.runtime.deps import Deps, create_deps

__all__ = [
    "NormalizedEvent",
    "RawDispatchInput",
    "EventType",
    "PayloadKind",
    "normalize",
    "event_key",
    "DispatchValidationError",
    "Dispatcher",
    "EventRouter",
    "LocalEventQueue",
    "SqsEventQueue",
    "QueueFullError",
    "Deps",
    "create_deps",
]

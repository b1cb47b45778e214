# =============================================================================
# Dependency Container - One Per Process
# =============================================================================
# Explicitly constructed at process startup and passed to every component.
# Owns this process's AWS clients and its pipeline components; nothing here
# is a module-level singleton.
#
# Backends are picked from configuration:
# - EVENT_QUEUE_URL          -> SQS broker, else local priority queue
# - COORDINATION_TABLE_NAME  -> DynamoDB flags/kill switch, else in-memory
# - AUDIT_TABLE_NAME         -> DynamoDB audit log, else in-memory
# - FANOUT_TOPIC_ARN         -> SNS fan-out, else in-process
# =============================================================================

import logging
import os
import threading
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Mapping
import boto3

from concierge.audit.log import AuditLog
from concierge.audit.store import DynamoAuditStore, MemoryAuditStore
from concierge.notifications.fanout import FanoutSubscriber, LocalNotifier, SnsNotifier
from concierge.runtime.coordination import DynamoCoordinationStore, MemoryCoordinationStore
from concierge.runtime.dedup import DedupCache, SharedDedupCache
from concierge.runtime.dispatch import Dispatcher
from concierge.runtime.kill_switch import KillSwitch
from concierge.runtime.queue import LocalEventQueue, SqsEventQueue
from concierge.runtime.reload_flags import ReloadFlags, ReloadWatcher
from concierge.runtime.router import EventRouter
from concierge.runtime.worker import WorkerLoop

logger = logging.getLogger(__name__)


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    return env.get(key, str(default)).strip().lower() == "true"


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    try:
        return int(env.get(key, "") or default)
    except ValueError:
        logger.warning(f"Invalid integer for {key}; using {default}")
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(env.get(key, "") or default)
    except ValueError:
        logger.warning(f"Invalid number for {key}; using {default}")
        return default


def _env_str(env: Mapping[str, str], key: str, default: str = "") -> str:
    return (env.get(key) or "").strip() or default


@dataclass
class Deps:
    """
    Dependency injection container for the dispatch pipeline.

    All AWS clients and components are lazy-loaded on first access.

    Usage:
        deps = create_deps()
        deps.router.register(handle_message)
        event_id = deps.dispatcher.dispatch({"source": "api", "type": "message.sent", "payload": {...}})
    """
    region: str = field(default_factory=lambda: os.environ.get("AWS_REGION", "ap-south-1"))
    env: Dict[str, str] = field(default_factory=lambda: dict(os.environ), repr=False)
    background_drain: bool = True

    # ==========================================================================
    # AWS Clients (lazy-loaded)
    # ==========================================================================

    @cached_property
    def dynamodb(self):
        """DynamoDB resource."""
        return boto3.resource("dynamodb", region_name=self.region)

    @cached_property
    def sqs(self):
        """SQS client."""
        return boto3.client("sqs", region_name=self.region)

    @cached_property
    def sns(self):
        """SNS client."""
        return boto3.client("sns", region_name=self.region)

    # ==========================================================================
    # Configuration
    # ==========================================================================

    @cached_property
    def config(self) -> Dict[str, Any]:
        """Environment configuration, read once."""
        env = self.env
        return {
            "EVENT_QUEUE_URL": _env_str(env, "EVENT_QUEUE_URL"),
            "COORDINATION_TABLE_NAME": _env_str(env, "COORDINATION_TABLE_NAME"),
            "COORDINATION_PK_NAME": _env_str(env, "COORDINATION_PK_NAME", "pk"),
            "AUDIT_TABLE_NAME": _env_str(env, "AUDIT_TABLE_NAME"),
            "FANOUT_TOPIC_ARN": _env_str(env, "FANOUT_TOPIC_ARN"),
            "FANOUT_QUEUE_URL": _env_str(env, "FANOUT_QUEUE_URL"),
            "INTERNAL_SECRET": _env_str(env, "INTERNAL_SECRET"),
            "API_BASE_URL": _env_str(env, "API_BASE_URL", "http://localhost:3000").rstrip("/"),
            "DEDUP_TTL_SECONDS": _env_float(env, "DEDUP_TTL_SECONDS", 60),
            "DEDUP_SHARED": _env_bool(env, "DEDUP_SHARED", False),
            "RELOAD_POLL_SECONDS": _env_float(env, "RELOAD_POLL_SECONDS", 2),
            "LOCAL_QUEUE_MAX_PENDING": _env_int(env, "LOCAL_QUEUE_MAX_PENDING", 1000),
            "WORKER_WAIT_SECONDS": _env_int(env, "WORKER_WAIT_SECONDS", 20),
            "RESPONDER": _env_str(env, "RESPONDER"),
            "LOG_LEVEL": _env_str(env, "LOG_LEVEL", "INFO").upper(),
        }

    @property
    def distributed(self) -> bool:
        """True when a broker is configured; it then replaces local processing entirely."""
        return bool(self.config["EVENT_QUEUE_URL"])

    # ==========================================================================
    # Coordination (kill switch, reload flags)
    # ==========================================================================

    @cached_property
    def coordination_store(self):
        table_name = self.config["COORDINATION_TABLE_NAME"]
        if not table_name:
            logger.info("No COORDINATION_TABLE_NAME; using in-memory coordination store")
            return MemoryCoordinationStore()
        return DynamoCoordinationStore(self.dynamodb.Table(table_name), pk_name=self.config["COORDINATION_PK_NAME"])

    @cached_property
    def kill_switch(self) -> KillSwitch:
        return KillSwitch(self.coordination_store)

    @cached_property
    def reload_flags(self) -> ReloadFlags:
        return ReloadFlags(self.coordination_store)

    def reload_watcher(self, scopes: Iterable[str], on_reload: Callable[[List[str]], None]) -> ReloadWatcher:
        return ReloadWatcher(
            self.coordination_store,
            scopes,
            on_reload,
            interval=self.config["RELOAD_POLL_SECONDS"],
        )

    # ==========================================================================
    # Pipeline
    # ==========================================================================

    @cached_property
    def dedup(self):
        ttl = self.config["DEDUP_TTL_SECONDS"]
        if self.config["DEDUP_SHARED"] and self.config["COORDINATION_TABLE_NAME"]:
            return SharedDedupCache(self.coordination_store, ttl_seconds=ttl)
        return DedupCache(ttl_seconds=ttl)

    @cached_property
    def event_queue(self):
        if self.distributed:
            return SqsEventQueue(
                self.sqs,
                self.config["EVENT_QUEUE_URL"],
                wait_seconds=self.config["WORKER_WAIT_SECONDS"],
            )
        return LocalEventQueue(max_pending=self.config["LOCAL_QUEUE_MAX_PENDING"])

    @cached_property
    def router(self) -> EventRouter:
        return EventRouter(self.kill_switch)

    @cached_property
    def dispatcher(self) -> Dispatcher:
        queue = self.event_queue
        on_enqueued = None if self.distributed else self.schedule_drain
        return Dispatcher(queue, dedup=self.dedup, on_enqueued=on_enqueued)

    def drain_local(self) -> int:
        """Run the local processing loop. No-op in distributed mode."""
        if self.distributed:
            return 0
        return self.router.process_local(self.event_queue)

    def schedule_drain(self) -> None:
        """
        Kick the local processing loop so the caller gets its id first.

        With background_drain=False the loop runs inline (tests, CLI).
        """
        if self.distributed:
            return
        if not self.background_drain:
            self.drain_local()
            return
        if self.event_queue.processing:
            # The running loop picks up the new event.
            return
        threading.Thread(target=self.drain_local, name="local-drain", daemon=True).start()

    def worker_loop(self) -> WorkerLoop:
        return WorkerLoop(self.event_queue, self.router)

    # ==========================================================================
    # Audit & Fan-out
    # ==========================================================================

    @cached_property
    def notifier(self):
        topic_arn = self.config["FANOUT_TOPIC_ARN"]
        if topic_arn:
            return SnsNotifier(self.sns, topic_arn)
        return LocalNotifier()

    def fanout_subscriber(self) -> FanoutSubscriber:
        queue_url = self.config["FANOUT_QUEUE_URL"]
        if not queue_url:
            raise ValueError("FANOUT_QUEUE_URL is required to subscribe to fan-out notifications")
        return FanoutSubscriber(self.sqs, queue_url, wait_seconds=self.config["WORKER_WAIT_SECONDS"])

    @cached_property
    def audit_store(self):
        table_name = self.config["AUDIT_TABLE_NAME"]
        if not table_name:
            return MemoryAuditStore()
        return DynamoAuditStore(self.dynamodb.Table(table_name))

    @cached_property
    def audit_log(self) -> AuditLog:
        return AuditLog(self.audit_store, self.notifier)


def create_deps(region: str = None, env: Mapping[str, str] = None, background_drain: bool = True) -> Deps:
    """Create a new Deps instance. Call once per process."""
    environ = dict(os.environ if env is None else env)
    return Deps(
        region=region or environ.get("AWS_REGION", "ap-south-1"),
        env=environ,
        background_drain=background_drain,
    )


def configure_logging(deps: Deps) -> None:
    """Process entry points call this once."""
    logging.basicConfig(
        level=getattr(logging, deps.config["LOG_LEVEL"], logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

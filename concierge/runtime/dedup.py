# =============================================================================
# Deduplicator - Best-Effort, Time-Windowed
# =============================================================================
# Upstream producers (webhook-style channels) may retry delivery. A dispatch
# whose key was seen inside the window resolves to the original event id
# and produces no second queue entry or handler run.
# =============================================================================

import hashlib
import logging
import threading
import time
from typing import Dict, Optional, Tuple
from botocore.exceptions import BotoCoreError, ClientError
from concierge.runtime.coordination import store_key

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_TTL_SECONDS = 60


class DedupCache:
    """
    Per-process dedup set (key -> original event id) with fixed expiry.

    Not shared across processes: two API replicas can each accept the same
    duplicate once. Use SharedDedupCache when that matters.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._seen.items() if expires_at <= now]
        for k in expired:
            del self._seen[k]

    def remember(self, key: str, event_id: str) -> Optional[str]:
        """
        Record key for event_id.

        Returns:
            The original event id if key is already live, else None
        """
        now = self._clock()
        with self._lock:
            self._purge(now)
            seen = self._seen.get(key)
            if seen is not None:
                return seen[0]
            self._seen[key] = (event_id, now + self.ttl_seconds)
            return None

    def forget(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._seen)


class SharedDedupCache:
    """Dedup keys held in the coordination store with a TTL, visible to every replica."""

    def __init__(self, store, ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _store_key(key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return store_key("dedup", digest)

    def remember(self, key: str, event_id: str) -> Optional[str]:
        try:
            return self.store.set_if_absent(self._store_key(key), event_id, self.ttl_seconds)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Shared dedup unavailable, accepting event {event_id}: {e}")
            return None

    def forget(self, key: str) -> None:
        try:
            self.store.delete(self._store_key(key))
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Shared dedup forget failed: {e}")

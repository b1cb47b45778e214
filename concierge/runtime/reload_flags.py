# =============================================================================
# Reload Flags - Cross-Process Configuration Invalidation
# =============================================================================
# Writers (the API, after a configuration change) set a flag per scope.
# Readers (channel workers, the cron worker) poll, clear the flag, then run
# their reload callback to restart only the affected adapter.
#
# Staleness is bounded by one poll interval.
# =============================================================================

import logging
import threading
from typing import Callable, Iterable, List, Optional
from botocore.exceptions import BotoCoreError, ClientError
from concierge.runtime.coordination import store_key

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 2.0


class ReloadScope:
    """Closed set of reloadable subsystems."""
    SLACK = "slack"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SCHEDULE = "schedule"

    ALL = (SLACK, EMAIL, WHATSAPP, SCHEDULE)


def reload_key(scope: str) -> str:
    return store_key("reload", scope)


def _check_scope(scope: str) -> str:
    if scope not in ReloadScope.ALL:
        raise ValueError(f"Unknown reload scope: {scope}")
    return scope


class ReloadFlags:
    """Writer side."""

    def __init__(self, store):
        self.store = store

    def set_flag(self, scope: str) -> None:
        self.store.set(reload_key(_check_scope(scope)), "1")
        logger.info(f"Reload flag set for scope={scope}")

    def set_flags(self, scopes: Iterable[str]) -> List[str]:
        scopes = [_check_scope(s) for s in scopes]
        for scope in scopes:
            self.set_flag(scope)
        return scopes

    def is_set(self, scope: str) -> bool:
        return self.store.get(reload_key(_check_scope(scope))) is not None


class ReloadWatcher:
    """
    Reader side.

    Each poll atomically reads-and-clears every watched scope; if any was
    set, on_reload runs once. Several sets before one poll cause one reload,
    and a set landing during the reload causes at most one more.
    """

    def __init__(
        self,
        store,
        scopes: Iterable[str],
        on_reload: Callable[[List[str]], None],
        interval: float = DEFAULT_POLL_SECONDS,
    ):
        self.store = store
        self.scopes = [_check_scope(s) for s in scopes]
        self.on_reload = on_reload
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> List[str]:
        """
        Check every watched scope once.

        Returns:
            Scopes that were set (and have now been cleared)
        """
        fired = []
        for scope in self.scopes:
            try:
                if self.store.pop(reload_key(scope)) is not None:
                    fired.append(scope)
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Reload flag read failed for scope={scope}; will retry: {e}")
        if fired:
            logger.info(f"Reload flags observed: {fired}")
            try:
                self.on_reload(fired)
            except Exception as e:
                logger.exception(f"Reload callback failed for {fired}: {e}")
        return fired

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self) -> "ReloadWatcher":
        if self._thread and self._thread.is_alive():
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reload-watch", daemon=True)
        self._thread.start()
        logger.info(f"Watching reload scopes {self.scopes} every {self.interval}s")
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

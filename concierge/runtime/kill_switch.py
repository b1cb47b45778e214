# =============================================================================
# Kill Switch - Global Handler Gate
# =============================================================================
# A single shared boolean in the coordination store. When engaged no handler
# runs in any process; events are still accepted and queued.
# =============================================================================

import logging
from botocore.exceptions import BotoCoreError, ClientError
from concierge.runtime.coordination import store_key

logger = logging.getLogger(__name__)

KILL_SWITCH_KEY = store_key("kill-switch")


class KillSwitch:
    """get() is read before every batch of handler execution."""

    def __init__(self, store):
        self.store = store

    def get(self) -> bool:
        """True when engaged. Store failures read as disengaged."""
        try:
            return self.store.get(KILL_SWITCH_KEY) == "1"
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Kill switch unreadable, treating as disengaged: {e}")
            return False

    def set(self, enabled: bool) -> bool:
        self.store.set(KILL_SWITCH_KEY, "1" if enabled else "0")
        logger.info(f"Kill switch {'ENGAGED' if enabled else 'released'}")
        return bool(enabled)

    @property
    def engaged(self) -> bool:
        return self.get()

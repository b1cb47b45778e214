# =============================================================================
# Notifications Package - Cross-Process Fan-out
# =============================================================================

from concierge.notifications.fanout import (
    AUDIT_ENTRY_ADDED_CHANNEL,
    CHAT_RESULT_CHANNEL,
    RESPONSE_DELIVERY_CHANNEL,
    LocalNotifier,
    SnsNotifier,
    FanoutSubscriber,
)

__all__ = [
    "AUDIT_ENTRY_ADDED_CHANNEL",
    "CHAT_RESULT_CHANNEL",
    "RESPONSE_DELIVERY_CHANNEL",
    "LocalNotifier",
    "SnsNotifier",
    "FanoutSubscriber",
]

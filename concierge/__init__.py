# =============================================================================
# Concierge - Event Dispatch Pipeline
# =============================================================================
# Normalizes events from every channel, deduplicates them, queues them by
# priority and runs registered handlers, either in-process (local mode) or
# on Worker Loops behind an SQS broker (distributed mode).
# =============================================================================

__version__ = "1.0.0"

# =============================================================================
# Audit Package
# =============================================================================

from concierge.audit.store import AuditEntry, AuditEntryType, MemoryAuditStore, DynamoAuditStore
from concierge.audit.log import AuditLog

__all__ = [
    "AuditEntry",
    "AuditEntryType",
    "MemoryAuditStore",
    "DynamoAuditStore",
    "AuditLog",
]

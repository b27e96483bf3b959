# Canonical schemas for the alert ledger.
# Inbound alerts, committed records, and the events the ledger emits.

from .alert import (
    AlertRecord,
    WazuhAgent,
    WazuhAlert,
    WazuhRule,
    FINGERPRINT_SIZE,
    MAX_SEVERITY_LEVEL,
)
from .events import (
    AlertTriggered,
    CriticalAlert,
    EventKind,
    LedgerEvent,
    TransactionReceipt,
)

__all__ = [
    # Alerts
    "AlertRecord",
    "WazuhAgent",
    "WazuhAlert",
    "WazuhRule",
    "FINGERPRINT_SIZE",
    "MAX_SEVERITY_LEVEL",
    # Events
    "AlertTriggered",
    "CriticalAlert",
    "EventKind",
    "LedgerEvent",
    "TransactionReceipt",
]

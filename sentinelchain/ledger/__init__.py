# Ledger connection layer
from .client import (
    LedgerClient,
    InMemoryLedgerClient,
    LedgerError,
    LedgerUnavailable,
    LedgerRejected,
    Subscription,
)
from .config import LedgerConfig, LedgerDriver, get_ledger_driver, create_ledger_client

__all__ = [
    "LedgerClient",
    "InMemoryLedgerClient",
    "LedgerError",
    "LedgerUnavailable",
    "LedgerRejected",
    "Subscription",
    "LedgerConfig",
    "LedgerDriver",
    "get_ledger_driver",
    "create_ledger_client",
]

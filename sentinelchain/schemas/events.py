"""
Ledger Event Schema

The ledger emits exactly one event set per commit.
We never emit events ourselves; we only read them.

Each event:
- Has a kind (AlertTriggered, CriticalAlert)
- Carries a position (block number + index inside the block) when the
  ledger provides one
- Is folded into the severity aggregate at most once
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventKind(str, Enum):
    """
    Event kinds the ledger program emits.
    You can add more later, never remove.
    """
    ALERT_TRIGGERED = "AlertTriggered"
    CRITICAL_ALERT = "CriticalAlert"


# ============================================================
# Event Payloads
# ============================================================

class AlertTriggered(BaseModel):
    """Emitted for every committed alert."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["AlertTriggered"] = "AlertTriggered"
    log_id: str
    agent_id: str
    level: int = Field(..., ge=0, le=255)
    timestamp: int = Field(..., description="Ledger time of the commit (unix seconds)")

    @property
    def identifier(self) -> str:
        return self.log_id


class CriticalAlert(BaseModel):
    """
    Emitted when the ledger program flags an alert as critical by keyword.

    The ledger may expose the logId only as an indexed topic (a digest
    of the string) rather than the plain string. Exactly what we got is
    preserved: log_id when plain, log_id_digest when digest-only.
    A logId digest is an identifier, NOT a content fingerprint.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["CriticalAlert"] = "CriticalAlert"
    log_id: Optional[str] = None
    log_id_digest: Optional[str] = None
    keyword: str
    timestamp: int

    @model_validator(mode="after")
    def _has_identifier(self) -> "CriticalAlert":
        if not self.log_id and not self.log_id_digest:
            raise ValueError("CriticalAlert needs log_id or log_id_digest")
        return self

    @property
    def is_digest_only(self) -> bool:
        return not self.log_id

    @property
    def identifier(self) -> str:
        return self.log_id or self.log_id_digest


EventPayload = Annotated[
    Union[AlertTriggered, CriticalAlert],
    Field(discriminator="kind"),
]


# ============================================================
# Envelope
# ============================================================

class LedgerEvent(BaseModel):
    """
    One ledger event with its position in ledger order.

    POSITION RULES:
    - (block_number, log_index) is strictly increasing in emission order
    - block_number None means the ledger gave no ordering marker; such
      events can only be deduplicated by content key
    """
    model_config = ConfigDict(frozen=True)

    payload: EventPayload
    block_number: Optional[int] = Field(default=None, ge=0)
    log_index: int = Field(default=0, ge=0)
    tx_hash: Optional[str] = None

    @property
    def kind(self) -> EventKind:
        return EventKind(self.payload.kind)

    @property
    def position(self) -> Optional[tuple[int, int]]:
        if self.block_number is None:
            return None
        return (self.block_number, self.log_index)

    @property
    def content_key(self) -> tuple[str, str]:
        """Fallback dedup key when no position is available."""
        return (self.kind.value, self.payload.identifier)


# ============================================================
# Commit receipt
# ============================================================

class TransactionReceipt(BaseModel):
    """Proof that a commit was durably accepted by the ledger."""
    model_config = ConfigDict(frozen=True)

    tx_hash: str = Field(..., description="0x-prefixed SHA-256 of the canonical transaction")
    log_id: str
    block_number: int
    committed_at: datetime
    signer: Optional[str] = Field(default=None, description="Ed25519 public key (base64)")
    signature: Optional[str] = Field(default=None, description="Ed25519 signature of tx_hash (base64)")

"""
Alert Schemas

Two shapes of the same thing:
- WazuhAlert: what the monitoring agent posts to us (inbound envelope)
- AlertRecord: what the ledger holds once the alert is committed

An AlertRecord is immutable once committed.
The fingerprint is the tamper-evidence; everything else is context.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator


FINGERPRINT_SIZE = 32  # SHA-256 digest length in bytes
MAX_SEVERITY_LEVEL = 255  # uint8 on the ledger


# ============================================================
# Inbound envelope (monitoring agent -> ingestion service)
# ============================================================

class WazuhAgent(BaseModel):
    """The reporting agent."""
    model_config = ConfigDict(extra="allow")

    id: StrictStr = Field(..., min_length=1, description="Agent identifier")


class WazuhRule(BaseModel):
    """The detection rule that fired."""
    model_config = ConfigDict(extra="allow")

    level: StrictInt = Field(
        ...,
        ge=0,
        le=MAX_SEVERITY_LEVEL,
        description="Rule severity level (0-255)"
    )
    description: StrictStr = Field(..., description="Human-readable rule description")


class WazuhAlert(BaseModel):
    """
    Alert message as emitted by the monitoring agent.

    Only the fields the ledger needs are declared; anything else the
    agent sends is kept but ignored.
    """
    model_config = ConfigDict(extra="allow")

    id: StrictStr = Field(..., min_length=1, description="Agent-assigned alert id (becomes logId)")
    agent: WazuhAgent
    rule: WazuhRule
    full_log: StrictStr = Field(..., description="Raw log line the alert was raised on")


# ============================================================
# Committed record (ledger-owned)
# ============================================================

class AlertRecord(BaseModel):
    """
    An alert as committed to the ledger.

    log_id is opaque and NOT unique: a later commit under the same
    log_id shadows the earlier one for reads.
    """
    model_config = ConfigDict(frozen=True)

    log_id: str = Field(..., min_length=1)
    agent_id: str
    severity_level: int = Field(..., ge=0, le=MAX_SEVERITY_LEVEL)
    description: str
    fingerprint: bytes = Field(..., description="SHA-256 of raw_payload (32 bytes)")
    raw_payload: str = ""

    # Populated by the ledger on commit
    committed_at: Optional[datetime] = None
    block_number: Optional[int] = None

    @field_validator("fingerprint")
    @classmethod
    def _fingerprint_is_digest(cls, value: bytes) -> bytes:
        if len(value) != FINGERPRINT_SIZE:
            raise ValueError(
                f"fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(value)}"
            )
        return value

    @property
    def fingerprint_hex(self) -> str:
        """0x-prefixed hex form, as the ledger displays bytes32."""
        return "0x" + self.fingerprint.hex()

    def to_public_dict(self) -> dict:
        """JSON-friendly view (fingerprint as hex)."""
        return {
            "logId": self.log_id,
            "agentId": self.agent_id,
            "level": self.severity_level,
            "description": self.description,
            "fingerprint": self.fingerprint_hex,
            "timestamp": int(self.committed_at.timestamp()) if self.committed_at else None,
            "blockNumber": self.block_number,
        }

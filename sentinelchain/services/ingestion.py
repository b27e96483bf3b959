"""
Ingestion Service

Accepts one security alert, fingerprints its raw log and commits it to
the ledger. The caller hears back only after the ledger has confirmed
the write: there is no optimistic acknowledgment.

FLOW:
    webhook body -> parse_webhook_body() -> WazuhAlert
    WazuhAlert -> Hasher.digest(full_log) -> LedgerClient.commit()
    TransactionReceipt -> IngestionReceipt(status, tx_hash, log_id)

A malformed alert never reaches the ledger.
"""

import json
import time
from typing import Any

from pydantic import BaseModel, ValidationError

from ..core.hasher import Hasher, to_hex
from ..ledger.client import LedgerClient, LedgerError
from ..observability import get_logger, get_metrics, log_id_var
from ..schemas import WazuhAlert

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class IngestionError(Exception):
    """Base exception for ingestion errors."""
    pass


class MalformedInput(IngestionError):
    """Raised when an alert is missing a required field or has the wrong shape."""
    pass


class IngestionFailed(IngestionError):
    """
    Raised when the ledger did not accept the commit.

    The ledger error is chained as __cause__.
    """
    pass


# ============================================================
# PARSING
# ============================================================

def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "alert"
    return f"{location}: {first['msg']}"


def parse_alert(payload: Any) -> WazuhAlert:
    """
    Validate a decoded alert object.

    Raises:
        MalformedInput: If a required field is absent or of the wrong type
    """
    if not isinstance(payload, dict):
        raise MalformedInput("alert must be a JSON object")
    try:
        return WazuhAlert.model_validate(payload)
    except ValidationError as e:
        raise MalformedInput(_describe_validation_error(e)) from e


def parse_webhook_body(body: Any) -> WazuhAlert:
    """
    Decode a webhook body of the form {"message": "<alert as JSON string>"}.

    Raises:
        MalformedInput: If the envelope or the alert inside it is malformed
    """
    if not isinstance(body, dict):
        raise MalformedInput("request body must be a JSON object")

    message = body.get("message")
    if not isinstance(message, str):
        raise MalformedInput("message: must be a JSON-encoded string")

    try:
        payload = json.loads(message)
    except json.JSONDecodeError as e:
        raise MalformedInput(f"message: invalid JSON ({e.msg})") from e

    return parse_alert(payload)


# ============================================================
# SERVICE
# ============================================================

class IngestionReceipt(BaseModel):
    """What the caller gets back once the ledger has confirmed."""
    status: str = "success"
    tx_hash: str
    log_id: str
    block_number: int

    def to_response(self) -> dict:
        return {"status": self.status, "txHash": self.tx_hash, "logId": self.log_id}


class IngestionService:
    """
    Commits alerts to the ledger.

    Stateless apart from the ledger handle; safe to call concurrently.
    Each call is one ledger transaction. There are no retries here:
    a failed commit is reported and the upstream sender decides.
    """

    def __init__(self, ledger: LedgerClient):
        self._ledger = ledger

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    def ingest_body(self, body: Any) -> IngestionReceipt:
        """Parse a webhook body and ingest the alert inside it."""
        try:
            alert = parse_webhook_body(body)
        except MalformedInput as e:
            get_metrics().incr("ingest_rejected")
            logger.warning("Rejected malformed alert", error=str(e))
            raise
        return self.ingest(alert)

    def ingest(self, alert: WazuhAlert) -> IngestionReceipt:
        """
        Fingerprint and commit one alert.

        Raises:
            IngestionFailed: If the ledger is unavailable or rejects the commit
        """
        log_id_var.set(alert.id)
        fingerprint = Hasher.digest(alert.full_log)

        start = time.perf_counter()
        try:
            receipt = self._ledger.commit(
                log_id=alert.id,
                agent_id=alert.agent.id,
                level=alert.rule.level,
                description=alert.rule.description,
                fingerprint=fingerprint,
                raw_payload=alert.full_log,
            )
        except LedgerError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            get_metrics().record_commit(latency_ms, success=False)
            logger.error(
                "Ledger commit failed",
                agent_id=alert.agent.id,
                alert_level=alert.rule.level,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise IngestionFailed(f"ledger commit failed for {alert.id}") from e

        latency_ms = (time.perf_counter() - start) * 1000
        get_metrics().record_commit(latency_ms, success=True)
        logger.info(
            "Alert committed",
            agent_id=alert.agent.id,
            alert_level=alert.rule.level,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            fingerprint=to_hex(fingerprint),
            duration_ms=round(latency_ms, 2),
        )

        return IngestionReceipt(
            tx_hash=receipt.tx_hash,
            log_id=receipt.log_id,
            block_number=receipt.block_number,
        )

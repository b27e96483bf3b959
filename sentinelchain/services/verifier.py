"""
Integrity Verifier

Answers one question: does this payload (or digest) match what the
ledger recorded for this logId?

A failed comparison is an ordinary answer, not an error. Transport
failures are reported separately so a caller can tell "tampered or
unknown" from "could not ask".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..core.hasher import Hasher
from ..ledger.client import LedgerClient, LedgerError
from ..observability import get_logger, get_metrics

logger = get_logger(__name__)


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class VerificationOutcome:
    log_id: str
    status: VerificationStatus
    error: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    def to_dict(self) -> dict:
        result = {"logId": self.log_id, "verified": self.verified, "status": self.status.value}
        if self.error:
            result["error"] = self.error
        return result


class Verifier:
    """Recomputes or accepts a fingerprint and asks the ledger to compare."""

    def __init__(self, ledger: LedgerClient):
        self._ledger = ledger

    def verify(
        self,
        log_id: str,
        payload: Optional[str] = None,
        digest: Optional[Union[str, bytes]] = None,
    ) -> VerificationOutcome:
        """
        Verify by raw payload or by a previously obtained digest.

        Exactly one of payload / digest must be given.

        Raises:
            ValueError: If both or neither are given, or the digest is not
                a 32-byte value
        """
        if (payload is None) == (digest is None):
            raise ValueError("Provide exactly one of payload or digest")

        if payload is not None:
            candidate = Hasher.digest(payload)
        else:
            candidate = Hasher.parse_digest(digest)

        return self._compare(log_id, candidate)

    def verify_payload(self, log_id: str, payload: str) -> VerificationOutcome:
        return self.verify(log_id, payload=payload)

    def verify_digest(self, log_id: str, digest: Union[str, bytes]) -> VerificationOutcome:
        return self.verify(log_id, digest=digest)

    def _compare(self, log_id: str, candidate: bytes) -> VerificationOutcome:
        metrics = get_metrics()
        metrics.incr("verifications_total")

        try:
            if self._ledger.verify_digest(log_id, candidate):
                outcome = VerificationOutcome(log_id, VerificationStatus.VERIFIED)
            elif self._ledger.fetch_record(log_id) is None:
                outcome = VerificationOutcome(log_id, VerificationStatus.NOT_FOUND)
            else:
                outcome = VerificationOutcome(log_id, VerificationStatus.MISMATCH)
        except LedgerError as e:
            logger.warning("Verification could not reach the ledger", log_id=log_id, error=str(e))
            return VerificationOutcome(log_id, VerificationStatus.UNAVAILABLE, error=str(e))

        if not outcome.verified:
            metrics.incr("verification_mismatches")
        logger.info("Verification finished", log_id=log_id, status=outcome.status.value)
        return outcome

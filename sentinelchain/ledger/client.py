"""
Ledger Client Abstraction

This module defines the LedgerClient interface and the in-memory
implementation:
- LedgerClient: the call/event contract every ledger connection honours
- InMemoryLedgerClient: for development and testing

The ledger is the single source of truth for:
- Committed alert records
- Event ordering (block number, index inside the block)
- Event history since genesis

The ledger program itself is a black box. Its contract:
    storeLog(logId, agentId, level, description, fingerprint, rawLog)   write
    getLog(logId) -> (agentId, timestamp, level, fingerprint, description)
    verifyLog(logId, candidate) -> bool
    events AlertTriggered(logId, agentId, level, timestamp)
           CriticalAlert(logIdOrDigest, keyword, timestamp)

ERROR CONTRACT:
- LedgerUnavailable: could not reach the ledger, or no confirmation in time
- LedgerRejected: the ledger program refused the transaction
- Not found is NOT an error: fetch_record returns None
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from itertools import count
from threading import Lock, RLock
from typing import Callable, Iterable, Optional

from ..core.hasher import Hasher
from ..core.signing_service import SigningService
from ..observability import get_logger
from ..schemas import (
    AlertRecord,
    AlertTriggered,
    CriticalAlert,
    EventKind,
    LedgerEvent,
    TransactionReceipt,
    FINGERPRINT_SIZE,
    MAX_SEVERITY_LEVEL,
)

logger = get_logger(__name__)

EventHandler = Callable[[LedgerEvent], None]
ErrorHandler = Callable[[Exception], None]


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class LedgerUnavailable(LedgerError):
    """Raised when the ledger cannot be reached or does not confirm in time."""
    pass


class LedgerRejected(LedgerError):
    """Raised when the ledger program refuses a transaction."""
    pass


# ============================================================
# SUBSCRIPTIONS
# ============================================================

class Subscription:
    """
    Handle for a live event subscription.

    cancel() unregisters it. Cancelling twice is a no-op.
    """

    _ids = count(1)

    def __init__(self, kind: EventKind, on_cancel: Callable[["Subscription"], None]):
        self.id = next(self._ids)
        self.kind = kind
        self._on_cancel = on_cancel
        self._active = True
        self._lock = Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._on_cancel(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription #{self.id} {self.kind.value} {state}>"


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerClient(ABC):
    """
    Typed handle to the external append-only ledger.

    Implementations must ensure:
    1. commit() returns only after the write is durably accepted
    2. Events of one kind are delivered in emission order
    3. query_historical_events() is ordered by ledger position
    4. subscribe() delivers only events emitted after the call
    """

    def __init__(self, program: str = "sentinelchain", signing: Optional[SigningService] = None):
        self.program = program
        self._signing = signing
        self._nonce = count()
        self._nonce_lock = Lock()

    @property
    def signing(self) -> Optional[SigningService]:
        return self._signing

    # ----------------------------------------------------------------
    # Contract
    # ----------------------------------------------------------------

    @abstractmethod
    def commit(
        self,
        log_id: str,
        agent_id: str,
        level: int,
        description: str,
        fingerprint: bytes,
        raw_payload: str,
    ) -> TransactionReceipt:
        """
        Submit storeLog and wait for confirmation.

        Raises:
            LedgerUnavailable: connection failed or confirmation timed out
            LedgerRejected: the ledger program refused the transaction
        """
        pass

    @abstractmethod
    def fetch_record(self, log_id: str) -> Optional[AlertRecord]:
        """
        getLog. Returns None when no record exists for log_id.

        Raises:
            LedgerUnavailable: ledger unreachable
        """
        pass

    @abstractmethod
    def verify_digest(self, log_id: str, candidate: bytes) -> bool:
        """
        verifyLog: does the stored fingerprint for log_id equal candidate?

        False for an unknown log_id. Raises LedgerUnavailable only for
        transport failure.
        """
        pass

    @abstractmethod
    def query_historical_events(self, kind: EventKind) -> list[LedgerEvent]:
        """All events of kind since genesis, in ledger order."""
        pass

    @abstractmethod
    def subscribe(
        self,
        kind: EventKind,
        handler: EventHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> Subscription:
        """
        Register a live callback for new events of kind.

        If the subscription is lost (connection drop), on_error is called
        once and the subscription becomes inactive. Re-subscribing is the
        caller's job.
        """
        pass

    @abstractmethod
    def get_head_block(self) -> int:
        """Highest block number committed so far (0 for an empty ledger)."""
        pass

    def close(self) -> None:
        """Release connections and stop subscriptions."""
        pass

    # ----------------------------------------------------------------
    # Shared transaction helpers
    # ----------------------------------------------------------------

    def _seal_transaction(
        self,
        log_id: str,
        agent_id: str,
        level: int,
        description: str,
        fingerprint: bytes,
        raw_payload: str,
        submitted_at: datetime,
    ) -> tuple[str, Optional[str], Optional[str]]:
        """
        Hash and sign a storeLog transaction.

        Returns:
            (tx_hash, signer_public_key, signature)
        """
        with self._nonce_lock:
            nonce = next(self._nonce)

        transaction = {
            "program": self.program,
            "method": "storeLog",
            "args": {
                "logId": log_id,
                "agentId": agent_id,
                "level": level,
                "description": description,
                "fingerprint": fingerprint,
                "rawLog": raw_payload,
            },
            "nonce": nonce,
            "submittedAt": submitted_at,
            "signer": self._signing.public_key if self._signing else None,
        }
        tx_hash = Hasher.hash_transaction(transaction)

        if self._signing is None:
            return tx_hash, None, None
        return tx_hash, self._signing.public_key, self._signing.sign(tx_hash)


def validate_store_log(
    log_id: str,
    agent_id: str,
    level: int,
    description: str,
    fingerprint: bytes,
    raw_payload: str,
) -> None:
    """
    The ledger program's argument rules for storeLog.

    Raises:
        LedgerRejected: If any argument would be refused on-ledger
    """
    if not isinstance(log_id, str) or not log_id:
        raise LedgerRejected("storeLog: logId must be a non-empty string")
    for name, value in (("agentId", agent_id), ("description", description), ("rawLog", raw_payload)):
        if not isinstance(value, str):
            raise LedgerRejected(f"storeLog: {name} must be a string")
    if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= MAX_SEVERITY_LEVEL:
        raise LedgerRejected(f"storeLog: level must be uint8, got {level!r}")
    if not isinstance(fingerprint, bytes) or len(fingerprint) != FINGERPRINT_SIZE:
        raise LedgerRejected("storeLog: fingerprint must be bytes32")


def match_keyword(description: str, keywords: Iterable[str]) -> Optional[str]:
    """First critical keyword found in description (case-insensitive)."""
    lowered = description.lower()
    for keyword in keywords:
        if keyword and keyword.lower() in lowered:
            return keyword
    return None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerClient(LedgerClient):
    """
    In-memory ledger honouring the full call/event contract.

    Suitable for:
    - Development
    - Testing (including outage and dropped-subscription scenarios)

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)

    One block per commit. AlertTriggered is always log index 0;
    CriticalAlert, when emitted, is log index 1.
    """

    def __init__(
        self,
        signing: Optional[SigningService] = None,
        program: str = "sentinelchain",
        critical_keywords: Iterable[str] = (),
        critical_digest_only: bool = True,
    ):
        super().__init__(program=program, signing=signing)
        self._critical_keywords = tuple(critical_keywords)
        self._critical_digest_only = critical_digest_only

        self._records: dict[str, AlertRecord] = {}
        self._events: list[LedgerEvent] = []
        self._block = 0
        self._subscriptions: dict[int, tuple[Subscription, EventHandler, Optional[ErrorHandler]]] = {}
        self._available = True
        self._commit_calls = 0

        # Reentrant: handlers run under the lock and may read the ledger
        self._lock = RLock()

    # ----------------------------------------------------------------
    # Test controls
    # ----------------------------------------------------------------

    @property
    def commit_calls(self) -> int:
        """How many times commit() was invoked (including failures)."""
        return self._commit_calls

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def set_available(self, available: bool) -> None:
        """Simulate the ledger going away (or coming back)."""
        self._available = available

    def drop_subscriptions(self) -> int:
        """
        Simulate connection loss for every live subscription.

        Returns:
            Number of subscriptions dropped
        """
        with self._lock:
            dropped = list(self._subscriptions.values())
            self._subscriptions.clear()

        for subscription, _handler, on_error in dropped:
            subscription._active = False
            if on_error is not None:
                on_error(LedgerUnavailable("subscription connection lost"))
        return len(dropped)

    def _require_available(self) -> None:
        if not self._available:
            raise LedgerUnavailable("ledger node unreachable")

    # ----------------------------------------------------------------
    # Contract
    # ----------------------------------------------------------------

    def commit(
        self,
        log_id: str,
        agent_id: str,
        level: int,
        description: str,
        fingerprint: bytes,
        raw_payload: str,
    ) -> TransactionReceipt:
        self._commit_calls += 1
        self._require_available()
        validate_store_log(log_id, agent_id, level, description, fingerprint, raw_payload)

        with self._lock:
            committed_at = datetime.now(timezone.utc)
            tx_hash, signer, signature = self._seal_transaction(
                log_id, agent_id, level, description, fingerprint, raw_payload, committed_at
            )
            self._block += 1
            block = self._block

            self._records[log_id] = AlertRecord(
                log_id=log_id,
                agent_id=agent_id,
                severity_level=level,
                description=description,
                fingerprint=fingerprint,
                raw_payload=raw_payload,
                committed_at=committed_at,
                block_number=block,
            )

            emitted = self._emit(log_id, agent_id, level, description, committed_at, block, tx_hash)
            self._events.extend(emitted)

            # Delivered under the lock so per-kind order matches block order
            for event in emitted:
                self._deliver(event)

        return TransactionReceipt(
            tx_hash=tx_hash,
            log_id=log_id,
            block_number=block,
            committed_at=committed_at,
            signer=signer,
            signature=signature,
        )

    def _emit(
        self,
        log_id: str,
        agent_id: str,
        level: int,
        description: str,
        committed_at: datetime,
        block: int,
        tx_hash: str,
    ) -> list[LedgerEvent]:
        timestamp = int(committed_at.timestamp())
        events = [
            LedgerEvent(
                payload=AlertTriggered(
                    log_id=log_id, agent_id=agent_id, level=level, timestamp=timestamp
                ),
                block_number=block,
                log_index=0,
                tx_hash=tx_hash,
            )
        ]

        keyword = match_keyword(description, self._critical_keywords)
        if keyword is not None:
            if self._critical_digest_only:
                critical = CriticalAlert(
                    log_id_digest=Hasher.topic_digest(log_id), keyword=keyword, timestamp=timestamp
                )
            else:
                critical = CriticalAlert(log_id=log_id, keyword=keyword, timestamp=timestamp)
            events.append(
                LedgerEvent(payload=critical, block_number=block, log_index=1, tx_hash=tx_hash)
            )
        return events

    def _deliver(self, event: LedgerEvent) -> None:
        for subscription, handler, _on_error in list(self._subscriptions.values()):
            if subscription.kind != event.kind or not subscription.active:
                continue
            try:
                handler(event)
            except Exception:
                # A broken subscriber must not undo a confirmed commit
                logger.exception(
                    "Subscriber failed handling event",
                    subscription_id=subscription.id,
                    kind=event.kind.value,
                    block_number=event.block_number,
                )

    def fetch_record(self, log_id: str) -> Optional[AlertRecord]:
        self._require_available()
        with self._lock:
            return self._records.get(log_id)

    def verify_digest(self, log_id: str, candidate: bytes) -> bool:
        self._require_available()
        with self._lock:
            record = self._records.get(log_id)
        if record is None:
            return False
        return Hasher.matches(record.fingerprint, candidate)

    def query_historical_events(self, kind: EventKind) -> list[LedgerEvent]:
        self._require_available()
        with self._lock:
            return [e for e in self._events if e.kind == kind]

    def subscribe(
        self,
        kind: EventKind,
        handler: EventHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> Subscription:
        self._require_available()
        subscription = Subscription(kind, on_cancel=self._unsubscribe)
        with self._lock:
            self._subscriptions[subscription.id] = (subscription, handler, on_error)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def get_head_block(self) -> int:
        self._require_available()
        return self._block

    def close(self) -> None:
        with self._lock:
            subscriptions = [entry[0] for entry in self._subscriptions.values()]
        for subscription in subscriptions:
            subscription.cancel()

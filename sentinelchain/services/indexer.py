"""
Event Indexer

Rebuilds the severity aggregate from the ledger's event history, then
keeps it current from the live event stream.

The indexer is a projection: it never writes to the ledger, and its
whole state can be thrown away and rebuilt by replaying from genesis.

SYNC PROTOCOL (bootstrap and every re-subscription):
1. Subscribe first; live events are buffered, not folded
2. Replay history for the same kinds
3. Drain the buffer
Nothing emitted after step 1 can be missed, and nothing is counted twice.

A kind counts as live only while its current subscription is active.
Loss reports from a superseded subscription are ignored, and the
reconnect thread keeps going until no kind is lost.

IDEMPOTENCE:
- Events with a ledger position fold only if their (block, log_index)
  is above the per-kind high-water mark
- Events without a position are deduplicated by (kind, identifier) in a
  bounded recent-set. Beyond its capacity an old duplicate can slip
  through; this is a known gap of position-less streams.

SEVERITY:
    level >= 7        critical
    4 <= level <= 6   medium
    level < 4         low
    CriticalAlert     critical
"""

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Optional

from ..config import IndexerConfig
from ..core.hasher import Hasher
from ..ledger.client import LedgerClient, LedgerError, Subscription
from ..observability import get_logger, get_metrics
from ..schemas import AlertTriggered, CriticalAlert, EventKind, LedgerEvent

logger = get_logger(__name__)


# ============================================================
# CLASSIFICATION
# ============================================================

CRITICAL_THRESHOLD = 7
MEDIUM_THRESHOLD = 4


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    CRITICAL = "critical"

    @property
    def display(self) -> str:
        return self.value.capitalize()


def classify_level(level: int) -> Severity:
    """Bucket a 0-255 alert level."""
    if level >= CRITICAL_THRESHOLD:
        return Severity.CRITICAL
    if level >= MEDIUM_THRESHOLD:
        return Severity.MEDIUM
    return Severity.LOW


def classify_event(event: LedgerEvent) -> Severity:
    payload = event.payload
    if isinstance(payload, CriticalAlert):
        return Severity.CRITICAL
    return classify_level(payload.level)


class SeverityAggregate:
    """
    Counters per severity bucket.

    Counts only go up, and every read sees a consistent snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {severity: 0 for severity in Severity}

    def increment(self, severity: Severity) -> None:
        with self._lock:
            self._counts[severity] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {severity.value: count for severity, count in self._counts.items()}

    def as_table(self) -> list[dict[str, Any]]:
        """All three buckets, zero-filled, in Low/Medium/Critical order."""
        with self._lock:
            return [
                {"level": severity.display, "count": self._counts[severity]}
                for severity in Severity
            ]

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())


# ============================================================
# HASH RESOLUTION
# ============================================================

class HashSource(str, Enum):
    LEDGER = "ledger"
    PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class ResolvedHash:
    """
    The fingerprint shown next to an indexed alert.

    Only a LEDGER value is evidence. A PLACEHOLDER is derived from the
    identifier and must never be presented as a content fingerprint.
    """
    value: str
    source: HashSource
    description: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.source == HashSource.LEDGER


@dataclass(frozen=True)
class FoldedAlert:
    """One entry of the recent-alerts feed."""
    kind: EventKind
    identifier: str
    digest_only: bool
    severity: Severity
    timestamp: int
    resolved: ResolvedHash
    agent_id: Optional[str] = None
    level: Optional[int] = None
    keyword: Optional[str] = None
    block_number: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "logId": None if self.digest_only else self.identifier,
            "logIdDigest": self.identifier if self.digest_only else None,
            "agentId": self.agent_id,
            "level": self.level,
            "severity": self.severity.display,
            "keyword": self.keyword,
            "description": self.resolved.description,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "hash": self.resolved.value,
            "hashSource": self.resolved.source.value,
        }


# ============================================================
# EXCEPTIONS
# ============================================================

class IndexerError(Exception):
    """Base exception for indexer errors."""
    pass


class BootstrapError(IndexerError):
    """Raised when the initial replay cannot complete. Fatal at startup."""
    pass


# ============================================================
# INDEXER
# ============================================================

class _AgentHistory:
    def __init__(self, capacity: int):
        self.counts = {severity: 0 for severity in Severity}
        self.alerts: deque = deque(maxlen=capacity)


class Indexer:
    """
    Event-sourced severity projection over the ledger.

    Usage:
        indexer = Indexer(ledger, IndexerConfig.from_env())
        indexer.bootstrap()      # raises BootstrapError on failure
        indexer.severity_table()
        indexer.stop()
    """

    def __init__(self, ledger: LedgerClient, config: Optional[IndexerConfig] = None):
        self._ledger = ledger
        self._config = config or IndexerConfig()
        self._aggregate = SeverityAggregate()

        # Guards every piece of mutable state below
        self._lock = threading.Lock()
        # Serializes sync passes (bootstrap, re-subscription)
        self._sync_lock = threading.Lock()

        self._high_water: dict[EventKind, tuple[int, int]] = {}
        self._seen_keys: OrderedDict = OrderedDict()
        self._buffer: Optional[list[LedgerEvent]] = None
        self._recent: deque = deque(maxlen=self._config.recent_alerts)
        self._agents: dict[str, _AgentHistory] = {}
        self._folded = 0
        self._discarded = 0

        self._subscriptions: dict[EventKind, Subscription] = {}
        self._lost: set[EventKind] = set()
        self._generations: dict[EventKind, int] = {}
        self._ready = False
        self._live = threading.Event()
        self._stop_event = threading.Event()
        self._reconnect_thread: Optional[threading.Thread] = None

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    @property
    def aggregate(self) -> SeverityAggregate:
        return self._aggregate

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_live(self) -> bool:
        return self._live.is_set()

    def bootstrap(self) -> None:
        """
        Subscribe, replay history, then switch to live folding.

        Raises:
            BootstrapError: If the ledger cannot be subscribed to or replayed
        """
        if self._ready:
            return

        kinds = list(EventKind)
        try:
            self._sync(kinds)
        except LedgerError as e:
            logger.error("Indexer bootstrap failed", error_type=type(e).__name__, error=str(e))
            raise BootstrapError(f"historical replay failed: {e}") from e

        with self._lock:
            self._ready = True
            if not self._lost:
                self._live.set()

        logger.info("Indexer bootstrap complete", **self._aggregate.snapshot(), folded=self._folded)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel subscriptions and stop any reconnect attempts."""
        self._stop_event.set()
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
            thread = self._reconnect_thread
        for subscription in subscriptions:
            subscription.cancel()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._live.clear()
        logger.info("Indexer stopped")

    def wait_live(self, timeout: Optional[float] = None) -> bool:
        """Block until every subscription is established (or timeout)."""
        return self._live.wait(timeout=timeout)

    # ----------------------------------------------------------------
    # Sync passes
    # ----------------------------------------------------------------

    def _sync(self, kinds: list[EventKind]) -> None:
        with self._sync_lock:
            with self._lock:
                self._buffer = []

            created: list[Subscription] = []
            try:
                for kind in kinds:
                    with self._lock:
                        generation = self._generations[kind] = self._generations.get(kind, 0) + 1
                    subscription = self._ledger.subscribe(
                        kind,
                        self._on_live_event,
                        on_error=partial(self._on_subscription_lost, kind, generation),
                    )
                    created.append(subscription)
                    with self._lock:
                        if self._generations[kind] == generation:
                            self._subscriptions[kind] = subscription

                for kind in kinds:
                    history = self._ledger.query_historical_events(kind)
                    for event in history:
                        self._fold(event)
            except LedgerError:
                with self._lock:
                    self._buffer = None
                    for kind in kinds:
                        # Late errors from the abandoned subscriptions are stale
                        self._generations[kind] = self._generations.get(kind, 0) + 1
                        self._subscriptions.pop(kind, None)
                    self._lost.update(kinds)
                for subscription in created:
                    subscription.cancel()
                raise

            while True:
                with self._lock:
                    pending = self._buffer
                    if not pending:
                        self._buffer = None
                        break
                    self._buffer = []
                for event in pending:
                    self._fold(event)

            with self._lock:
                for kind in kinds:
                    current = self._subscriptions.get(kind)
                    if current is not None and current.active:
                        self._lost.discard(kind)
                    else:
                        self._lost.add(kind)

    def _on_live_event(self, event: LedgerEvent) -> None:
        with self._lock:
            if self._buffer is not None:
                self._buffer.append(event)
                return
        self._fold(event)

    def _on_subscription_lost(self, kind: EventKind, generation: int, error: Exception) -> None:
        if self._stop_event.is_set():
            return

        with self._lock:
            if self._generations.get(kind) != generation:
                return
            self._subscriptions.pop(kind, None)
            self._lost.add(kind)
            self._live.clear()
            thread = None
            if self._reconnect_thread is None:
                thread = self._reconnect_thread = threading.Thread(
                    target=self._reconnect_loop, name="indexer-reconnect", daemon=True
                )

        logger.warning("Live subscription lost", kind=kind.value, error=str(error))
        if thread is not None:
            thread.start()

    def _reconnect_loop(self) -> None:
        delay = self._config.retry_initial_seconds

        while not self._stop_event.is_set():
            with self._lock:
                if not self._lost:
                    self._reconnect_thread = None
                    if self._ready:
                        self._live.set()
                    return
                kinds = sorted(self._lost, key=lambda k: k.value)

            try:
                self._sync(kinds)
            except LedgerError as e:
                logger.warning(
                    "Re-subscription failed, backing off",
                    kinds=[k.value for k in kinds],
                    retry_in_seconds=delay,
                    error=str(e),
                )
                if self._stop_event.wait(timeout=delay):
                    break
                delay = min(delay * 2, self._config.retry_max_seconds)
                continue

            with self._lock:
                restored = [k.value for k in kinds if k not in self._lost]
            if not restored:
                logger.warning("Re-subscription dropped during sync, backing off", retry_in_seconds=delay)
                if self._stop_event.wait(timeout=delay):
                    break
                delay = min(delay * 2, self._config.retry_max_seconds)
                continue

            get_metrics().incr("subscription_restarts")
            logger.info("Live subscription restored", kinds=restored)
            delay = self._config.retry_initial_seconds

        with self._lock:
            self._reconnect_thread = None

    # ----------------------------------------------------------------
    # Folding
    # ----------------------------------------------------------------

    def _is_duplicate(self, event: LedgerEvent) -> bool:
        """Check and record the event's marker. Caller holds self._lock."""
        position = event.position
        if position is not None:
            high_water = self._high_water.get(event.kind)
            if high_water is not None and position <= high_water:
                return True
            self._high_water[event.kind] = position
            return False

        key = event.content_key
        if key in self._seen_keys:
            self._seen_keys.move_to_end(key)
            return True
        self._seen_keys[key] = None
        if len(self._seen_keys) > self._config.dedup_capacity:
            self._seen_keys.popitem(last=False)
        return False

    def handle_event(self, event: LedgerEvent) -> bool:
        """
        Fold one event into the aggregate.

        Returns:
            True if folded, False if discarded as already seen
        """
        return self._fold(event)

    def _fold(self, event: LedgerEvent) -> bool:
        severity = classify_event(event)

        with self._lock:
            if self._is_duplicate(event):
                self._discarded += 1
                get_metrics().incr("events_discarded")
                logger.debug(
                    "Discarded duplicate event",
                    kind=event.kind.value,
                    identifier=event.payload.identifier,
                    block_number=event.block_number,
                )
                return False

        # Never raises; ledger reads stay outside the lock
        resolved = self.resolve_hash(event)
        alert = self._to_folded_alert(event, severity, resolved)

        with self._lock:
            self._aggregate.increment(severity)
            self._folded += 1
            self._recent.appendleft(alert)
            if isinstance(event.payload, AlertTriggered):
                history = self._agents.get(alert.agent_id)
                if history is None:
                    history = self._agents[alert.agent_id] = _AgentHistory(self._config.recent_alerts)
                history.counts[severity] += 1
                history.alerts.appendleft(alert)
        get_metrics().incr("events_folded")

        logger.info(
            "Event folded",
            kind=event.kind.value,
            identifier=alert.identifier,
            severity=severity.value,
            block_number=event.block_number,
            hash=resolved.value,
            hash_source=resolved.source.value,
        )
        return True

    @staticmethod
    def _to_folded_alert(event: LedgerEvent, severity: Severity, resolved: ResolvedHash) -> FoldedAlert:
        payload = event.payload
        if isinstance(payload, AlertTriggered):
            return FoldedAlert(
                kind=event.kind,
                identifier=payload.log_id,
                digest_only=False,
                severity=severity,
                timestamp=payload.timestamp,
                resolved=resolved,
                agent_id=payload.agent_id,
                level=payload.level,
                block_number=event.block_number,
            )
        return FoldedAlert(
            kind=event.kind,
            identifier=payload.identifier,
            digest_only=payload.is_digest_only,
            severity=severity,
            timestamp=payload.timestamp,
            resolved=resolved,
            keyword=payload.keyword,
            block_number=event.block_number,
        )

    def resolve_hash(self, event: LedgerEvent) -> ResolvedHash:
        """
        Fingerprint for display: from the ledger record when it can be
        read, otherwise a placeholder derived from the identifier.

        A digest-only CriticalAlert has no logId to look up; its digest
        identifies the log and is never treated as a fingerprint.
        """
        payload = event.payload
        if isinstance(payload, CriticalAlert) and payload.is_digest_only:
            get_metrics().incr("hash_fallbacks")
            return ResolvedHash(Hasher.placeholder(payload.log_id_digest), HashSource.PLACEHOLDER)

        log_id = payload.log_id
        try:
            record = self._ledger.fetch_record(log_id)
        except LedgerError as e:
            logger.warning("Record lookup failed, using placeholder hash", identifier=log_id, error=str(e))
            record = None
        except Exception:
            # The event is already marked seen; it must still be folded
            logger.exception("Record lookup raised, using placeholder hash", identifier=log_id)
            record = None

        if record is None:
            get_metrics().incr("hash_fallbacks")
            return ResolvedHash(Hasher.placeholder(log_id), HashSource.PLACEHOLDER)
        return ResolvedHash(record.fingerprint_hex, HashSource.LEDGER, description=record.description)

    # ----------------------------------------------------------------
    # Read model
    # ----------------------------------------------------------------

    def snapshot(self) -> dict[str, int]:
        return self._aggregate.snapshot()

    def severity_table(self) -> list[dict[str, Any]]:
        return self._aggregate.as_table()

    def recent_alerts(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Most recent folded alerts, newest first."""
        with self._lock:
            alerts = list(self._recent)
        if limit is not None:
            alerts = alerts[:limit]
        return [alert.to_dict() for alert in alerts]

    def agent_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._agents)

    def agent_alerts(self, agent_id: str) -> Optional[dict[str, Any]]:
        """Drill-down for one agent, or None if it has no indexed alerts."""
        with self._lock:
            history = self._agents.get(agent_id)
            if history is None:
                return None
            counts = {severity.value: count for severity, count in history.counts.items()}
            alerts = list(history.alerts)

        return {
            "agentId": agent_id,
            "total": sum(counts.values()),
            "bySeverity": counts,
            "alerts": [alert.to_dict() for alert in alerts],
        }

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "ready": self._ready,
                "live": self._live.is_set(),
                "folded": self._folded,
                "discarded": self._discarded,
                "lost_subscriptions": sorted(kind.value for kind in self._lost),
                "high_water": {
                    kind.value: list(position) for kind, position in self._high_water.items()
                },
            }

"""
PostgreSQL Ledger

A durable, append-only implementation of the ledger contract.

Provides:
- Append-only tables (UPDATE/DELETE rejected by trigger)
- Serialized writes via a transaction-scoped advisory lock, so block
  numbers commit in the order they are assigned
- Statement timeouts so a commit never hangs past the confirmation bound
- Live subscriptions as polling threads reading above the last
  delivered block

THREAD SAFETY:
Every call opens its own connection. Each subscription owns one
long-lived connection on its own thread.
"""

import json
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import psycopg2
from pydantic import ValidationError

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
)
from .client import (
    ErrorHandler,
    EventHandler,
    LedgerClient,
    LedgerError,
    LedgerRejected,
    LedgerUnavailable,
    Subscription,
    match_keyword,
    validate_store_log,
)
from .config import LedgerConfig

logger = get_logger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_logs (
    block_number    BIGSERIAL PRIMARY KEY,
    program         TEXT        NOT NULL,
    log_id          TEXT        NOT NULL CHECK (log_id <> ''),
    agent_id        TEXT        NOT NULL,
    level           SMALLINT    NOT NULL CHECK (level BETWEEN 0 AND 255),
    description     TEXT        NOT NULL,
    fingerprint     BYTEA       NOT NULL CHECK (octet_length(fingerprint) = 32),
    raw_log         TEXT        NOT NULL,
    tx_hash         TEXT        NOT NULL UNIQUE,
    signer          TEXT,
    signature       TEXT,
    committed_at    TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS ledger_logs_lookup_idx
    ON ledger_logs (program, log_id, block_number DESC);

CREATE TABLE IF NOT EXISTS ledger_events (
    block_number    BIGINT      NOT NULL REFERENCES ledger_logs (block_number),
    log_index       SMALLINT    NOT NULL,
    program         TEXT        NOT NULL,
    kind            TEXT        NOT NULL CHECK (kind IN ('AlertTriggered', 'CriticalAlert')),
    payload_json    JSONB       NOT NULL,
    PRIMARY KEY (block_number, log_index)
);

CREATE INDEX IF NOT EXISTS ledger_events_kind_idx
    ON ledger_events (program, kind, block_number, log_index);

CREATE OR REPLACE FUNCTION ledger_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ledger is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ledger_logs_append_only ON ledger_logs;
CREATE TRIGGER ledger_logs_append_only
    BEFORE UPDATE OR DELETE ON ledger_logs
    FOR EACH ROW EXECUTE FUNCTION ledger_reject_mutation();

DROP TRIGGER IF EXISTS ledger_events_append_only ON ledger_events;
CREATE TRIGGER ledger_events_append_only
    BEFORE UPDATE OR DELETE ON ledger_events
    FOR EACH ROW EXECUTE FUNCTION ledger_reject_mutation();
"""


class PostgresLedgerClient(LedgerClient):
    """
    PostgreSQL implementation of LedgerClient.

    The database plays the ledger program: it validates storeLog
    arguments (CHECK constraints), assigns block numbers, and records
    the AlertTriggered / CriticalAlert events of each commit in the
    same transaction as the record.
    """

    # psycopg2 error codes
    PGCODE_QUERY_CANCELED = "57014"
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCLASS_INTEGRITY = "23"
    PGCLASS_DATA = "22"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        config: LedgerConfig,
        signing: Optional[SigningService] = None,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            config: Ledger configuration (timeouts, program, keyword rule).
            signing: Commit signer; unsigned commits when None.
        """
        super().__init__(program=config.program, signing=signing)
        self._connection_factory = connection_factory
        self._config = config
        self._statement_timeout_ms = int(config.confirm_timeout_seconds * 1000)
        self._pollers: dict[int, "_SubscriptionPoller"] = {}
        self._pollers_lock = threading.Lock()

    @classmethod
    def connect(cls, config: LedgerConfig, signing: Optional[SigningService] = None) -> "PostgresLedgerClient":
        """
        Build a client for config.url, verify connectivity and ensure the schema.

        Raises:
            LedgerUnavailable: If the database cannot be reached
        """
        connect_timeout = max(1, int(config.confirm_timeout_seconds))

        def connection_factory():
            return psycopg2.connect(config.url, connect_timeout=connect_timeout)

        client = cls(connection_factory, config, signing=signing)
        client.ensure_schema()
        return client

    # ----------------------------------------------------------------
    # Connection helpers
    # ----------------------------------------------------------------

    def _open(self):
        try:
            return self._connection_factory()
        except psycopg2.Error as e:
            raise LedgerUnavailable(f"cannot connect to ledger: {e}") from e

    def _translate(self, e: "psycopg2.Error", action: str) -> LedgerError:
        """Map a psycopg2 error onto the ledger error taxonomy."""
        pgcode = getattr(e, "pgcode", None) or ""

        if pgcode in (self.PGCODE_QUERY_CANCELED, self.PGCODE_LOCK_NOT_AVAILABLE):
            return LedgerUnavailable(f"{action}: ledger did not confirm in time")
        if pgcode.startswith(self.PGCLASS_INTEGRITY) or pgcode.startswith(self.PGCLASS_DATA):
            return LedgerRejected(f"{action}: {e.pgerror or e}")
        return LedgerUnavailable(f"{action}: {e}")

    def _read(self, action: str, sql: str, params: tuple) -> list[tuple]:
        conn = self._open()
        try:
            with conn.cursor() as cursor:
                cursor.execute(f"SET statement_timeout = {self._statement_timeout_ms}")
                cursor.execute(sql, params)
                return cursor.fetchall()
        except psycopg2.Error as e:
            raise self._translate(e, action) from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Create ledger tables if missing (idempotent)."""
        conn = self._open()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, "ensure_schema") from e
        finally:
            conn.close()

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
        validate_store_log(log_id, agent_id, level, description, fingerprint, raw_payload)

        committed_at = datetime.now(timezone.utc)
        tx_hash, signer, signature = self._seal_transaction(
            log_id, agent_id, level, description, fingerprint, raw_payload, committed_at
        )

        conn = self._open()
        conn.autocommit = False
        try:
            with conn.cursor() as cursor:
                # SET LOCAL keeps timeouts transaction-scoped
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL lock_timeout = '{self._statement_timeout_ms}ms'")

                # One writer at a time per program: block numbers commit in order
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (self.program,))

                cursor.execute(
                    """
                    INSERT INTO ledger_logs (
                        program, log_id, agent_id, level, description,
                        fingerprint, raw_log, tx_hash, signer, signature, committed_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING block_number
                    """,
                    (
                        self.program, log_id, agent_id, level, description,
                        psycopg2.Binary(fingerprint), raw_payload, tx_hash,
                        signer, signature, committed_at,
                    ),
                )
                block = cursor.fetchone()[0]

                for index, payload in enumerate(
                    self._emit(log_id, agent_id, level, description, committed_at)
                ):
                    cursor.execute(
                        """
                        INSERT INTO ledger_events (block_number, log_index, program, kind, payload_json)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (block, index, self.program, payload.kind, json.dumps(payload.model_dump(mode="json"))),
                    )

            conn.commit()
        except psycopg2.Error as e:
            try:
                conn.rollback()
            except psycopg2.Error:
                logger.warning("Rollback failed after commit error", log_id=log_id)
            raise self._translate(e, "storeLog") from e
        finally:
            conn.close()

        return TransactionReceipt(
            tx_hash=tx_hash,
            log_id=log_id,
            block_number=block,
            committed_at=committed_at,
            signer=signer,
            signature=signature,
        )

    def _emit(self, log_id: str, agent_id: str, level: int, description: str, committed_at: datetime):
        timestamp = int(committed_at.timestamp())
        yield AlertTriggered(log_id=log_id, agent_id=agent_id, level=level, timestamp=timestamp)

        keyword = match_keyword(description, self._config.critical_keywords)
        if keyword is None:
            return
        if self._config.critical_digest_only:
            yield CriticalAlert(log_id_digest=Hasher.topic_digest(log_id), keyword=keyword, timestamp=timestamp)
        else:
            yield CriticalAlert(log_id=log_id, keyword=keyword, timestamp=timestamp)

    def fetch_record(self, log_id: str) -> Optional[AlertRecord]:
        rows = self._read(
            "getLog",
            """
            SELECT log_id, agent_id, level, description, fingerprint, raw_log,
                   committed_at, block_number
            FROM ledger_logs
            WHERE program = %s AND log_id = %s
            ORDER BY block_number DESC
            LIMIT 1
            """,
            (self.program, log_id),
        )
        if not rows:
            return None
        row = rows[0]
        return AlertRecord(
            log_id=row[0],
            agent_id=row[1],
            severity_level=row[2],
            description=row[3],
            fingerprint=bytes(row[4]),
            raw_payload=row[5],
            committed_at=row[6],
            block_number=row[7],
        )

    def verify_digest(self, log_id: str, candidate: bytes) -> bool:
        rows = self._read(
            "verifyLog",
            """
            SELECT fingerprint FROM ledger_logs
            WHERE program = %s AND log_id = %s
            ORDER BY block_number DESC
            LIMIT 1
            """,
            (self.program, log_id),
        )
        if not rows:
            return False
        return Hasher.matches(bytes(rows[0][0]), candidate)

    def query_historical_events(self, kind: EventKind) -> list[LedgerEvent]:
        return self._events_after(kind, after_block=0)

    def _events_after(self, kind: EventKind, after_block: int, conn=None) -> list[LedgerEvent]:
        sql = """
            SELECT e.block_number, e.log_index, e.payload_json, l.tx_hash
            FROM ledger_events e
            JOIN ledger_logs l ON l.block_number = e.block_number
            WHERE e.program = %s AND e.kind = %s AND e.block_number > %s
            ORDER BY e.block_number, e.log_index
        """
        params = (self.program, kind.value, after_block)
        if conn is None:
            rows = self._read("queryFilter", sql, params)
        else:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
            conn.commit()  # end the read transaction so the next poll sees new rows
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row: tuple) -> LedgerEvent:
        """
        Raises:
            LedgerRejected: If the stored payload does not decode to an event
        """
        payload = row[2]
        try:
            if isinstance(payload, str):
                payload = json.loads(payload)
            return LedgerEvent(payload=payload, block_number=row[0], log_index=row[1], tx_hash=row[3])
        except (ValueError, ValidationError) as e:
            raise LedgerRejected(f"undecodable event at block {row[0]} index {row[1]}") from e

    def get_head_block(self) -> int:
        rows = self._read(
            "head",
            "SELECT COALESCE(MAX(block_number), 0) FROM ledger_logs WHERE program = %s",
            (self.program,),
        )
        return int(rows[0][0])

    def subscribe(
        self,
        kind: EventKind,
        handler: EventHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> Subscription:
        start_block = self.get_head_block()
        subscription = Subscription(kind, on_cancel=self._unsubscribe)
        poller = _SubscriptionPoller(self, subscription, handler, on_error, start_block)
        with self._pollers_lock:
            self._pollers[subscription.id] = poller
        poller.start()
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._pollers_lock:
            poller = self._pollers.pop(subscription.id, None)
        if poller is not None:
            poller.stop()

    def close(self) -> None:
        with self._pollers_lock:
            subscriptions = [p.subscription for p in self._pollers.values()]
        for subscription in subscriptions:
            subscription.cancel()


class _SubscriptionPoller:
    """Background thread delivering new events of one kind, in order."""

    def __init__(
        self,
        client: PostgresLedgerClient,
        subscription: Subscription,
        handler: EventHandler,
        on_error: Optional[ErrorHandler],
        start_block: int,
    ):
        self.subscription = subscription
        self._client = client
        self._handler = handler
        self._on_error = on_error
        self._cursor_block = start_block
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"ledger-subscription-{subscription.id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run_loop(self) -> None:
        interval = self._client._config.poll_interval_seconds
        conn = None
        try:
            conn = self._client._open()
            while not self._stop_event.wait(timeout=interval):
                for event in self._client._events_after(
                    self.subscription.kind, self._cursor_block, conn=conn
                ):
                    if self._stop_event.is_set():
                        return
                    self._handler(event)
                    self._cursor_block = event.block_number
        except (LedgerError, psycopg2.Error) as e:
            self._fail(e if isinstance(e, LedgerError) else LedgerUnavailable(str(e)))
        except Exception as e:
            logger.exception(
                "Ledger subscription crashed",
                subscription_id=self.subscription.id,
                kind=self.subscription.kind.value,
            )
            error = LedgerError(f"subscription {self.subscription.id} failed: {e}")
            error.__cause__ = e
            self._fail(error)
        finally:
            if conn is not None:
                try:
                    conn.close()
                except psycopg2.Error:
                    pass

    def _fail(self, error: LedgerError) -> None:
        """Mark the subscription lost and tell its owner, once."""
        if self._stop_event.is_set():
            return
        logger.warning(
            "Ledger subscription lost",
            subscription_id=self.subscription.id,
            kind=self.subscription.kind.value,
            error=str(error),
        )
        self.subscription._active = False
        with self._client._pollers_lock:
            self._client._pollers.pop(self.subscription.id, None)
        if self._on_error is not None:
            self._on_error(error)

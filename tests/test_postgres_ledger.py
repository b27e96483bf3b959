"""
Tests for the PostgreSQL ledger's SQL flow and error mapping.

No database needed: connections are mocks.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import psycopg2
import pytest

from sentinelchain.core import Hasher
from sentinelchain.ledger import (
    LedgerConfig,
    LedgerDriver,
    LedgerError,
    LedgerRejected,
    LedgerUnavailable,
)
from sentinelchain.ledger.postgres import PostgresLedgerClient
from sentinelchain.schemas import EventKind


class FakePgError(psycopg2.OperationalError):
    """psycopg2 error with a settable SQLSTATE."""

    def __init__(self, message, code):
        super().__init__(message)
        self._code = code

    @property
    def pgcode(self):
        return self._code


def make_connection(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def config():
    return LedgerConfig(
        driver=LedgerDriver.POSTGRES,
        url="postgresql://ledger@localhost/alerts",
        confirm_timeout_seconds=2.0,
        critical_keywords=("ransomware",),
    )


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def conn(cursor):
    return make_connection(cursor)


@pytest.fixture
def client(conn, config):
    return PostgresLedgerClient(lambda: conn, config)


def executed_sql(cursor):
    return [call.args[0] for call in cursor.execute.call_args_list]


class TestCommit:
    def test_commit_flow(self, client, conn, cursor):
        cursor.fetchone.return_value = (7,)
        receipt = client.commit("A1", "ag-7", 8, "brute force", Hasher.digest("X"), "X")

        assert receipt.block_number == 7
        assert receipt.log_id == "A1"
        statements = executed_sql(cursor)
        assert "SET LOCAL statement_timeout = '2000ms'" in statements[0]
        assert any("pg_advisory_xact_lock" in sql for sql in statements)
        assert sum("INSERT INTO ledger_events" in sql for sql in statements) == 1
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_keyword_adds_critical_event(self, client, cursor):
        cursor.fetchone.return_value = (1,)
        client.commit("A1", "ag-7", 3, "Ransomware detected", Hasher.digest("X"), "X")
        event_inserts = [
            call.args[1] for call in cursor.execute.call_args_list
            if "INSERT INTO ledger_events" in call.args[0]
        ]
        assert [params[3] for params in event_inserts] == ["AlertTriggered", "CriticalAlert"]
        assert [params[1] for params in event_inserts] == [0, 1]

    def test_invalid_arguments_never_sent(self, client, conn):
        with pytest.raises(LedgerRejected):
            client.commit("A1", "ag-7", 300, "d", Hasher.digest("X"), "X")
        conn.cursor.assert_not_called()

    def test_timeout_is_unavailable(self, client, conn, cursor):
        cursor.execute.side_effect = FakePgError("canceling statement due to statement timeout", "57014")
        with pytest.raises(LedgerUnavailable):
            client.commit("A1", "ag-7", 8, "d", Hasher.digest("X"), "X")
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_check_violation_is_rejected(self, client, cursor):
        cursor.execute.side_effect = FakePgError("violates check constraint", "23514")
        with pytest.raises(LedgerRejected):
            client.commit("A1", "ag-7", 8, "d", Hasher.digest("X"), "X")

    def test_connection_failure(self, config):
        def refuse():
            raise psycopg2.OperationalError("could not connect to server")

        client = PostgresLedgerClient(refuse, config)
        with pytest.raises(LedgerUnavailable):
            client.commit("A1", "ag-7", 8, "d", Hasher.digest("X"), "X")


class TestReads:
    def test_fetch_record(self, client, cursor):
        committed_at = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)
        cursor.fetchall.return_value = [
            ("A1", "ag-7", 8, "brute force", memoryview(Hasher.digest("X")), "X", committed_at, 3)
        ]
        record = client.fetch_record("A1")
        assert record.fingerprint == Hasher.digest("X")
        assert record.block_number == 3
        assert record.committed_at == committed_at

    def test_fetch_missing(self, client, cursor):
        cursor.fetchall.return_value = []
        assert client.fetch_record("A1") is None

    def test_verify_digest(self, client, cursor):
        cursor.fetchall.return_value = [(Hasher.digest("X"),)]
        assert client.verify_digest("A1", Hasher.digest("X"))
        assert not client.verify_digest("A1", Hasher.digest("Y"))

    def test_verify_unknown(self, client, cursor):
        cursor.fetchall.return_value = []
        assert not client.verify_digest("A1", Hasher.digest("X"))

    def test_historical_events(self, client, cursor):
        cursor.fetchall.return_value = [
            (1, 0, {"kind": "AlertTriggered", "log_id": "A1", "agent_id": "ag-7", "level": 8, "timestamp": 1}, "0xaa"),
            (2, 0, '{"kind": "AlertTriggered", "log_id": "A2", "agent_id": "ag-7", "level": 2, "timestamp": 2}', "0xbb"),
        ]
        events = client.query_historical_events(EventKind.ALERT_TRIGGERED)
        assert [e.position for e in events] == [(1, 0), (2, 0)]
        assert events[1].payload.log_id == "A2"
        assert events[0].tx_hash == "0xaa"

    def test_head_block(self, client, cursor):
        cursor.fetchall.return_value = [(42,)]
        assert client.get_head_block() == 42

    def test_read_timeout(self, client, cursor):
        cursor.execute.side_effect = FakePgError("timeout", "57014")
        with pytest.raises(LedgerUnavailable):
            client.get_head_block()


def triggered_row(block, log_id):
    payload = {"kind": "AlertTriggered", "log_id": log_id, "agent_id": "ag-7", "level": 8, "timestamp": block}
    return (block, 0, payload, f"0x{block:02x}")


def fetch_sequence(*results):
    """fetchall side effect: each result in turn (raised if an exception), then empty."""
    pending = list(results)

    def fetchall():
        if not pending:
            fetchall.drained.set()
            return []
        result = pending.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    fetchall.drained = threading.Event()
    return fetchall


class TestSubscriptions:
    @pytest.fixture
    def polling_client(self, conn, config):
        config.poll_interval_seconds = 0.01
        return PostgresLedgerClient(lambda: conn, config)

    def subscribe(self, client, handler=None):
        errors = []
        failed = threading.Event()

        def on_error(error):
            errors.append(error)
            failed.set()

        subscription = client.subscribe(EventKind.ALERT_TRIGGERED, handler or (lambda event: None), on_error)
        return subscription, errors, failed

    def test_delivers_in_order_above_head(self, polling_client, cursor):
        fetchall = fetch_sequence(
            [(5,)],
            [triggered_row(6, "A6"), triggered_row(7, "A7")],
        )
        cursor.fetchall.side_effect = fetchall
        delivered = []
        done = threading.Event()

        def handler(event):
            delivered.append(event)
            if len(delivered) == 2:
                done.set()

        subscription, errors, _ = self.subscribe(polling_client, handler)
        try:
            assert done.wait(timeout=5)
            assert fetchall.drained.wait(timeout=5)
            assert [e.payload.log_id for e in delivered] == ["A6", "A7"]
            assert [e.block_number for e in delivered] == [6, 7]
        finally:
            subscription.cancel()

        poll_params = [
            call.args[1] for call in cursor.execute.call_args_list
            if "FROM ledger_events" in call.args[0]
        ]
        assert poll_params[0] == ("sentinelchain", "AlertTriggered", 5)
        assert ("sentinelchain", "AlertTriggered", 7) in poll_params[1:]
        assert errors == []

    def test_connection_loss_reported(self, polling_client, cursor):
        cursor.fetchall.side_effect = fetch_sequence(
            [(0,)],
            FakePgError("server closed the connection unexpectedly", "08006"),
        )
        subscription, errors, failed = self.subscribe(polling_client)

        assert failed.wait(timeout=5)
        assert isinstance(errors[0], LedgerUnavailable)
        assert not subscription.active
        assert polling_client._pollers == {}

    def test_undecodable_row_reported(self, polling_client, cursor):
        cursor.fetchall.side_effect = fetch_sequence(
            [(0,)],
            [(1, 0, '{"kind": "AlertTriggered", "log_id": "A1"}', "0x01")],
        )
        subscription, errors, failed = self.subscribe(polling_client)

        assert failed.wait(timeout=5)
        assert isinstance(errors[0], LedgerRejected)
        assert not subscription.active

    def test_handler_failure_reported(self, polling_client, cursor):
        cursor.fetchall.side_effect = fetch_sequence([(0,)], [triggered_row(1, "A1")])

        def handler(event):
            raise RuntimeError("projection crashed")

        subscription, errors, failed = self.subscribe(polling_client, handler)

        assert failed.wait(timeout=5)
        assert isinstance(errors[0], LedgerError)
        assert isinstance(errors[0].__cause__, RuntimeError)
        assert not subscription.active
        assert polling_client._pollers == {}

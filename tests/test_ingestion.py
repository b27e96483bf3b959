"""
Tests for alert ingestion: parsing, fingerprinting, committing.
"""

import json

import pytest

from sentinelchain.core import Hasher
from sentinelchain.ledger import InMemoryLedgerClient, LedgerRejected, LedgerUnavailable
from sentinelchain.observability import get_metrics
from sentinelchain.services import (
    IngestionFailed,
    IngestionService,
    MalformedInput,
    parse_webhook_body,
)


class RejectingLedger(InMemoryLedgerClient):
    def commit(self, *args, **kwargs):
        raise LedgerRejected("storeLog reverted")


class TestParseWebhookBody:
    def test_valid_body(self, webhook_body):
        alert = parse_webhook_body(webhook_body())
        assert alert.id == "A1"
        assert alert.agent.id == "ag-7"
        assert alert.rule.level == 8
        assert alert.rule.description == "brute force"
        assert alert.full_log == "X"

    def test_extra_fields_ignored(self, make_alert):
        payload = make_alert()
        payload["rule"]["groups"] = ["sshd", "authentication_failed"]
        payload["timestamp"] = "2024-03-15T14:30:00.000+0000"
        alert = parse_webhook_body({"message": json.dumps(payload)})
        assert alert.rule.level == 8

    def test_missing_rule_level(self, make_alert):
        payload = make_alert()
        del payload["rule"]["level"]
        with pytest.raises(MalformedInput, match="rule.level"):
            parse_webhook_body({"message": json.dumps(payload)})

    def test_missing_full_log(self, make_alert):
        payload = make_alert()
        del payload["full_log"]
        with pytest.raises(MalformedInput):
            parse_webhook_body({"message": json.dumps(payload)})

    def test_level_as_string_rejected(self, webhook_body):
        with pytest.raises(MalformedInput):
            parse_webhook_body(webhook_body(level="8"))

    def test_level_out_of_range_rejected(self, webhook_body):
        with pytest.raises(MalformedInput):
            parse_webhook_body(webhook_body(level=256))

    def test_empty_id_rejected(self, webhook_body):
        with pytest.raises(MalformedInput):
            parse_webhook_body(webhook_body(log_id=""))

    def test_message_must_be_string(self, make_alert):
        with pytest.raises(MalformedInput, match="message"):
            parse_webhook_body({"message": make_alert()})

    def test_message_must_be_json(self):
        with pytest.raises(MalformedInput, match="invalid JSON"):
            parse_webhook_body({"message": "{not json"})

    def test_alert_must_be_object(self):
        with pytest.raises(MalformedInput):
            parse_webhook_body({"message": "[1, 2, 3]"})

    def test_body_must_be_object(self):
        with pytest.raises(MalformedInput):
            parse_webhook_body(["message"])


class TestIngestionService:
    @pytest.fixture
    def service(self, ledger):
        return IngestionService(ledger)

    def test_ingest_commits(self, service, ledger, webhook_body):
        receipt = service.ingest_body(webhook_body())
        assert receipt.status == "success"
        assert receipt.log_id == "A1"
        assert receipt.tx_hash.startswith("0x")
        assert ledger.commit_calls == 1

    def test_fingerprint_of_full_log(self, service, ledger, webhook_body):
        service.ingest_body(webhook_body(full_log="Mar 15 sshd[42]: Failed password for root"))
        record = ledger.fetch_record("A1")
        assert record.fingerprint == Hasher.digest("Mar 15 sshd[42]: Failed password for root")
        assert record.raw_payload == "Mar 15 sshd[42]: Failed password for root"

    def test_response_shape(self, service, webhook_body):
        response = service.ingest_body(webhook_body()).to_response()
        assert set(response) == {"status", "txHash", "logId"}
        assert response["status"] == "success"

    def test_malformed_never_reaches_ledger(self, service, ledger, make_alert):
        payload = make_alert()
        del payload["rule"]["level"]
        with pytest.raises(MalformedInput):
            service.ingest_body({"message": json.dumps(payload)})
        assert ledger.commit_calls == 0
        assert get_metrics().count("ingest_rejected") == 1

    def test_unavailable_ledger(self, service, ledger, webhook_body):
        ledger.set_available(False)
        with pytest.raises(IngestionFailed) as exc_info:
            service.ingest_body(webhook_body())
        assert isinstance(exc_info.value.__cause__, LedgerUnavailable)
        assert get_metrics().count("commits_failed") == 1

    def test_rejected_commit(self, webhook_body):
        service = IngestionService(RejectingLedger())
        with pytest.raises(IngestionFailed) as exc_info:
            service.ingest_body(webhook_body())
        assert isinstance(exc_info.value.__cause__, LedgerRejected)

    def test_duplicate_log_id_committed_again(self, service, ledger, webhook_body):
        first = service.ingest_body(webhook_body(full_log="one"))
        second = service.ingest_body(webhook_body(full_log="two"))
        assert first.tx_hash != second.tx_hash
        assert ledger.fetch_record("A1").raw_payload == "two"

    def test_commit_metrics(self, service, webhook_body):
        service.ingest_body(webhook_body())
        summary = get_metrics().get_summary()
        assert summary["commits_total"] == 1
        assert summary["commits_failed"] == 0
        assert summary["commit_latency_p50_ms"] is not None

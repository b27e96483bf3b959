"""Shared fixtures: an in-memory ledger, fast indexer settings, alert builders."""

import json

import pytest

from sentinelchain.config import IndexerConfig, ServiceConfig
from sentinelchain.core import Hasher, SigningService
from sentinelchain.ledger import InMemoryLedgerClient
from sentinelchain.observability import reset_metrics


@pytest.fixture(autouse=True)
def fresh_metrics():
    reset_metrics()
    yield


@pytest.fixture
def signing():
    return SigningService.ephemeral()


@pytest.fixture
def ledger(signing):
    """Ledger without keyword rules: one AlertTriggered per commit."""
    client = InMemoryLedgerClient(signing=signing)
    yield client
    client.close()


@pytest.fixture
def keyword_ledger(signing):
    """Ledger that also emits a digest-only CriticalAlert for 'ransomware'."""
    client = InMemoryLedgerClient(signing=signing, critical_keywords=("ransomware",))
    yield client
    client.close()


@pytest.fixture
def indexer_config():
    return IndexerConfig(
        retry_initial_seconds=0.01,
        retry_max_seconds=0.05,
        dedup_capacity=100,
        recent_alerts=50,
    )


@pytest.fixture
def service_config():
    return ServiceConfig()


@pytest.fixture
def make_alert():
    """Build a Wazuh alert dict."""
    def _make(log_id="A1", agent_id="ag-7", level=8, description="brute force", full_log="X"):
        return {
            "id": log_id,
            "agent": {"id": agent_id},
            "rule": {"level": level, "description": description},
            "full_log": full_log,
        }
    return _make


@pytest.fixture
def webhook_body(make_alert):
    """Build a webhook body: the alert JSON-encoded inside "message"."""
    def _body(**kwargs):
        return {"message": json.dumps(make_alert(**kwargs))}
    return _body


def commit_alert(ledger, log_id="A1", agent_id="ag-7", level=8, description="brute force", full_log="X"):
    """Commit straight to the ledger, bypassing ingestion."""
    return ledger.commit(
        log_id=log_id,
        agent_id=agent_id,
        level=level,
        description=description,
        fingerprint=Hasher.digest(full_log),
        raw_payload=full_log,
    )


@pytest.fixture
def commit():
    return commit_alert

# Application services: ingestion, indexing, verification
from .ingestion import (
    IngestionService,
    IngestionReceipt,
    IngestionError,
    MalformedInput,
    IngestionFailed,
    parse_webhook_body,
)
from .indexer import (
    Indexer,
    SeverityAggregate,
    Severity,
    HashSource,
    ResolvedHash,
    IndexerError,
    BootstrapError,
    classify_level,
)
from .verifier import Verifier, VerificationOutcome, VerificationStatus

__all__ = [
    "IngestionService",
    "IngestionReceipt",
    "IngestionError",
    "MalformedInput",
    "IngestionFailed",
    "parse_webhook_body",
    "Indexer",
    "SeverityAggregate",
    "Severity",
    "HashSource",
    "ResolvedHash",
    "IndexerError",
    "BootstrapError",
    "classify_level",
    "Verifier",
    "VerificationOutcome",
    "VerificationStatus",
]

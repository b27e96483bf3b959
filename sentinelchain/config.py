"""
Service Configuration

Environment Variables:
    INGEST_PORT: Port for the ingestion service (default 3000)
    INDEXER_PORT: Port for the indexer service (default 4000)
    INDEXER_RETRY_INITIAL_SECONDS: First re-subscription delay (default 1.0)
    INDEXER_RETRY_MAX_SECONDS: Backoff ceiling (default 60)
    INDEXER_DEDUP_CAPACITY: Content keys remembered for events without a
        ledger position (default 10000)
    INDEXER_RECENT_ALERTS: Size of the recent-alerts feed (default 200)
    CORS_ORIGINS: Comma list of allowed dashboard origins
        (default http://localhost:5173)
"""

import os
from dataclasses import dataclass, field

from .observability import is_production

DEFAULT_CORS_ORIGINS = ("http://localhost:5173",)


def _origins_from_env() -> tuple[str, ...]:
    raw = os.getenv("CORS_ORIGINS")
    if raw is None:
        return DEFAULT_CORS_ORIGINS
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())


@dataclass
class IndexerConfig:
    """How the indexer retries, deduplicates and keeps its feed."""
    retry_initial_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    dedup_capacity: int = 10000
    recent_alerts: int = 200

    def __post_init__(self):
        if self.retry_initial_seconds <= 0:
            raise ValueError("retry_initial_seconds must be positive")
        if self.retry_max_seconds < self.retry_initial_seconds:
            raise ValueError("retry_max_seconds must be >= retry_initial_seconds")
        if self.dedup_capacity < 1:
            raise ValueError("dedup_capacity must be at least 1")
        if self.recent_alerts < 0:
            raise ValueError("recent_alerts must not be negative")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """Load configuration from environment variables."""
        return cls(
            retry_initial_seconds=float(os.getenv("INDEXER_RETRY_INITIAL_SECONDS", "1.0")),
            retry_max_seconds=float(os.getenv("INDEXER_RETRY_MAX_SECONDS", "60")),
            dedup_capacity=int(os.getenv("INDEXER_DEDUP_CAPACITY", "10000")),
            recent_alerts=int(os.getenv("INDEXER_RECENT_ALERTS", "200")),
        )


@dataclass
class ServiceConfig:
    """Process-level settings shared by both HTTP services."""
    ingest_port: int = 3000
    indexer_port: int = 4000
    host: str = "0.0.0.0"
    cors_origins: tuple[str, ...] = field(default_factory=lambda: DEFAULT_CORS_ORIGINS)
    production: bool = False

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load configuration from environment variables."""
        return cls(
            ingest_port=int(os.getenv("INGEST_PORT", "3000")),
            indexer_port=int(os.getenv("INDEXER_PORT", "4000")),
            host=os.getenv("SENTINELCHAIN_HOST", "0.0.0.0"),
            cors_origins=_origins_from_env(),
            production=is_production(),
        )

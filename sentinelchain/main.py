"""
SentinelChain - Tamper-evident security alert ledger

Two services share this package:

- Ingestion service (default port 3000): receives Wazuh alerts,
  fingerprints them and commits them to the ledger
- Indexer service (default port 4000): replays the ledger's event history,
  follows new events and serves severity statistics to the dashboard

Run either with:
    python -m tools.manage serve-ingest
    python -m tools.manage serve-indexer
or directly:
    uvicorn sentinelchain.main:create_ingest_app --factory --port 3000
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .api.routes_indexer import router as indexer_router
from .api.routes_ingest import router as ingest_router
from .config import IndexerConfig, ServiceConfig
from .core.signing_service import SigningService
from .ledger.client import LedgerClient
from .ledger.config import LedgerConfig, create_ledger_client
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .services.indexer import Indexer
from .services.ingestion import IngestionService
from .services.verifier import Verifier

logger = get_logger(__name__)

VERSION = "0.1.0"


def _ledger_from_env(service_config: ServiceConfig, sign_commits: bool) -> LedgerClient:
    signing = SigningService.from_env(production=service_config.production) if sign_commits else None
    return create_ledger_client(LedgerConfig.from_env(), signing=signing)


def _build_app(title: str, description: str, lifespan, service_config: ServiceConfig) -> FastAPI:
    app = FastAPI(
        title=title,
        description=description,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    # Dashboard origins only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(service_config.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": title}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health: ledger reachability and, for the indexer,
        readiness and live subscriptions.

        Returns 200 if healthy, 503 if unhealthy.
        """
        state = request.app.state
        health_status = check_health(
            ledger=getattr(state, "ledger", None),
            indexer=getattr(state, "indexer", None),
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


# ============================================================
# Ingestion service
# ============================================================

def create_ingest_app(
    ledger: Optional[LedgerClient] = None,
    service_config: Optional[ServiceConfig] = None,
) -> FastAPI:
    """
    Build the ingestion service.

    With no ledger given, logging is configured and the ledger client
    is built from the environment (and closed on shutdown).
    """
    service_config = service_config or ServiceConfig.from_env()
    owns_ledger = ledger is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = ledger
        if owns_ledger:
            setup_logging()
            client = _ledger_from_env(service_config, sign_commits=True)

        app.state.ledger = client
        app.state.ingestion = IngestionService(client)
        app.state.verifier = Verifier(client)

        logger.info(
            "Ingestion service startup complete",
            ledger_client=type(client).__name__,
            program=client.program,
            signer=client.signing.public_key if client.signing else None,
        )

        yield

        if owns_ledger:
            client.close()
        logger.info("Ingestion service shutdown complete")

    app = _build_app(
        "sentinelchain-ingest",
        "Commits security alerts to the append-only ledger and verifies them.",
        lifespan,
        service_config,
    )
    app.include_router(ingest_router)
    return app


# ============================================================
# Indexer service
# ============================================================

def create_indexer_app(
    ledger: Optional[LedgerClient] = None,
    indexer_config: Optional[IndexerConfig] = None,
    service_config: Optional[ServiceConfig] = None,
) -> FastAPI:
    """
    Build the indexer service.

    Startup blocks until the historical replay is done. A failed replay
    raises BootstrapError and the service does not start.
    """
    service_config = service_config or ServiceConfig.from_env()
    indexer_config = indexer_config or IndexerConfig.from_env()
    owns_ledger = ledger is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = ledger
        if owns_ledger:
            setup_logging()
            client = _ledger_from_env(service_config, sign_commits=False)

        indexer = Indexer(client, indexer_config)
        app.state.ledger = client
        app.state.indexer = indexer

        try:
            await run_in_threadpool(indexer.bootstrap)
        except Exception:
            if owns_ledger:
                client.close()
            raise

        logger.info(
            "Indexer service startup complete",
            ledger_client=type(client).__name__,
            **indexer.snapshot(),
        )

        yield

        indexer.stop()
        if owns_ledger:
            client.close()
        logger.info("Indexer service shutdown complete")

    app = _build_app(
        "sentinelchain-indexer",
        "Severity statistics and alert feed rebuilt from the ledger event stream.",
        lifespan,
        service_config,
    )
    app.include_router(indexer_router)
    return app

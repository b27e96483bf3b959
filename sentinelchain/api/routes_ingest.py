"""
Ingestion Service Routes

Write path:
- POST /ingest             - Commit one alert (webhook body {"message": "<json>"})

Read path:
- POST /verify             - Check a payload or digest against the ledger
- GET  /logs/{log_id}      - Ledger record for a logId

Every successful /ingest response means the ledger has confirmed the write.
"""

import json
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from ..ledger.client import LedgerError
from ..observability import get_logger
from ..services.ingestion import IngestionFailed, IngestionService, MalformedInput
from ..services.verifier import VerificationStatus, Verifier

logger = get_logger(__name__)

router = APIRouter(tags=["Ingestion"])


# ============================================================
# Helper Functions
# ============================================================

def get_ingestion(request: Request) -> IngestionService:
    """Get ingestion service from app state."""
    return request.app.state.ingestion


def get_verifier(request: Request) -> Verifier:
    """Get verifier from app state."""
    return request.app.state.verifier


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ============================================================
# Request Models
# ============================================================

class VerifyRequest(BaseModel):
    """Verify by raw payload or by digest (exactly one)."""
    model_config = ConfigDict(populate_by_name=True)

    log_id: str = Field(..., alias="logId", min_length=1)
    payload: Optional[str] = None
    digest: Optional[str] = None


# ============================================================
# Endpoints
# ============================================================

@router.post("/ingest")
async def ingest(request: Request):
    """
    Commit one alert to the ledger.

    Returns 200 {status, txHash, logId} after confirmation,
    400 {error} for a malformed alert, 500 {error} if the ledger failed.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response(400, "request body must be JSON")

    service = get_ingestion(request)
    try:
        receipt = await run_in_threadpool(service.ingest_body, body)
    except MalformedInput as e:
        return error_response(400, str(e))
    except IngestionFailed as e:
        return error_response(500, str(e))

    return receipt.to_response()


# Path used by existing Wazuh integrations
router.add_api_route("/wazuh", ingest, methods=["POST"], include_in_schema=False)


@router.post("/verify")
async def verify(body: VerifyRequest, request: Request):
    """
    Compare a payload (recomputed) or a digest against the ledger.

    verified=false with status mismatch / not_found is a normal answer.
    503 means the ledger could not be asked.
    """
    verifier = get_verifier(request)
    try:
        outcome = await run_in_threadpool(
            verifier.verify, body.log_id, body.payload, body.digest
        )
    except ValueError as e:
        return error_response(400, str(e))

    if outcome.status == VerificationStatus.UNAVAILABLE:
        return JSONResponse(status_code=503, content=outcome.to_dict())
    return outcome.to_dict()


@router.get("/logs/{log_id}")
async def get_log(log_id: str, request: Request):
    """Most recent ledger record for log_id."""
    ledger = get_ingestion(request).ledger
    try:
        record = await run_in_threadpool(ledger.fetch_record, log_id)
    except LedgerError as e:
        logger.warning("Record lookup failed", log_id=log_id, error=str(e))
        return error_response(503, "ledger unavailable")

    if record is None:
        return error_response(404, f"no record for logId {log_id}")
    return record.to_public_dict()

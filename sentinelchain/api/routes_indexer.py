"""
Indexer Service Routes

Read-only projections of the ledger event stream:
- GET /severity                  - Alert counts per severity bucket
- GET /alerts                    - Recent alerts feed (newest first)
- GET /agents                    - Agents with indexed alerts
- GET /agents/{agent_id}/alerts  - Drill-down for one agent
- GET /ready                     - 200 once bootstrap replay has finished

Projections answer 503 until the bootstrap replay is done, so a client
never sees a partially rebuilt count.
"""

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ..services.indexer import Indexer

router = APIRouter(tags=["Indexer"])


def get_indexer(request: Request) -> Indexer:
    """Get indexer from app state."""
    return request.app.state.indexer


def not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "indexer not ready"})


@router.get("/severity")
async def severity(request: Request):
    """[{level: "Low"|"Medium"|"Critical", count}] with all three buckets present."""
    indexer = get_indexer(request)
    if not indexer.is_ready:
        return not_ready()
    return indexer.severity_table()


@router.get("/alerts")
async def recent_alerts(request: Request, limit: int = Query(50, ge=1, le=1000)):
    indexer = get_indexer(request)
    if not indexer.is_ready:
        return not_ready()
    return indexer.recent_alerts(limit=limit)


@router.get("/agents")
async def agents(request: Request):
    indexer = get_indexer(request)
    if not indexer.is_ready:
        return not_ready()
    return indexer.agent_ids()


@router.get("/agents/{agent_id}/alerts")
async def agent_alerts(agent_id: str, request: Request):
    indexer = get_indexer(request)
    if not indexer.is_ready:
        return not_ready()

    drilldown = indexer.agent_alerts(agent_id)
    if drilldown is None:
        return JSONResponse(status_code=404, content={"error": f"no alerts for agent {agent_id}"})
    return drilldown


@router.get("/ready")
async def ready(request: Request):
    indexer = get_indexer(request)
    status = indexer.status()
    return JSONResponse(status_code=200 if status["ready"] else 503, content=status)

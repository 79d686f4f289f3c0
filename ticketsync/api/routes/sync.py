"""
Sync endpoints.

Endpoints:
- POST /api/sync       - Run a ticket sync (sync_all, sync_1_day, sync_7_days,
                         sync_30_days, sync_range)
- GET  /api/sync/logs  - Past runs with totals
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from ticketsync.api.dependencies import get_connector, get_stage_cache, get_sync_log_store, get_ticket_store
from ticketsync.connectors.hubspot import HubSpotTicketConnector
from ticketsync.connectors.persistence import SqlTicketStore, SyncLogStore
from ticketsync.connectors.resolution import PipelineStageCache, ReferenceDataResolver
from ticketsync.services.ticket_sync import SyncOrchestrator, SyncRequest, SyncResult

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncRequestBody(BaseModel):
    """Request body for starting a sync."""
    trigger: str
    start: Optional[datetime] = None  # sync_range only
    end: Optional[datetime] = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class SyncLogListResponse(BaseModel):
    """Response model for listing sync logs."""
    logs: list[dict[str, Any]]
    pagination: PaginationResponse
    stats: dict[str, int]


@router.post("", response_model=SyncResult)
async def trigger_sync(
    body: SyncRequestBody,
    response: Response,
    connector: HubSpotTicketConnector = Depends(get_connector),
    store: SqlTicketStore = Depends(get_ticket_store),
    log_store: SyncLogStore = Depends(get_sync_log_store),
    stage_cache: PipelineStageCache = Depends(get_stage_cache),
) -> SyncResult:
    """Run a sync to completion and return its result. Failed runs keep the result body."""
    orchestrator = SyncOrchestrator(
        connector,
        store,
        resolver=ReferenceDataResolver(connector, stage_cache),
        log_store=log_store,
    )
    result = await orchestrator.run(SyncRequest(trigger=body.trigger, start=body.start, end=body.end))

    if not result.success:
        response.status_code = 400 if result.error_type == "invalid_trigger" else 500
        logger.warning("Sync %s failed: %s", body.trigger, result.error)
    return result


@router.get("/logs", response_model=SyncLogListResponse)
async def list_sync_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sync_type: Optional[str] = Query(None, description="Filter by trigger"),
    status: Optional[str] = Query(None, description="success or failed"),
    log_store: SyncLogStore = Depends(get_sync_log_store),
) -> SyncLogListResponse:
    """List past sync runs, newest first."""
    logs = await log_store.list_page(sync_type=sync_type, status=status, limit=limit, offset=(page - 1) * limit)
    stats = await log_store.stats(sync_type=sync_type, status=status)
    total = stats["total_syncs"]
    return SyncLogListResponse(
        logs=[entry.to_dict() for entry in logs],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            total_pages=(total + limit - 1) // limit,
        ),
        stats=stats,
    )

"""
Ticket endpoints.

Endpoints:
- GET  /api/tickets                        - List stored tickets (filters, paging)
- GET  /api/tickets/filters                - Distinct categories and owners
- POST /api/tickets/refresh-all            - Re-fetch every stored ticket
- GET  /api/tickets/{external_id}          - One ticket
- POST /api/tickets/{external_id}/refresh  - Re-fetch one ticket from HubSpot
"""

import logging
from datetime import date, datetime, time
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ticketsync.api.dependencies import get_connector, get_stage_cache, get_ticket_store
from ticketsync.api.routes.sync import PaginationResponse
from ticketsync.connectors.base import HubSpotApiError
from ticketsync.connectors.hubspot import HubSpotTicketConnector
from ticketsync.connectors.persistence import SqlTicketStore, TicketListFilter
from ticketsync.connectors.resolution import PipelineStageCache, ReferenceDataResolver
from ticketsync.models.ticket import Ticket
from ticketsync.services.ticket_refresh import TicketRefresher

router = APIRouter()
logger = logging.getLogger(__name__)


class TicketResponse(BaseModel):
    """Response model for a ticket."""
    external_id: str
    ticket_number: str
    owner_id: str
    owner_name: str
    category: dict[str, Any]
    category_value: str
    category_label: str
    pipeline_stage: str
    pipeline_stage_label: str
    subject: str
    content: str
    company_name: str
    source_type: str
    support_object: str
    support_object_label: str
    created_date: str
    created_at: Optional[str]
    synced_at: str


class TicketListResponse(BaseModel):
    """Response model for listing tickets."""
    tickets: list[TicketResponse]
    pagination: PaginationResponse


class TicketFiltersResponse(BaseModel):
    categories: list[str]
    owners: list[str]


class RefreshAllResponse(BaseModel):
    total: int
    success: int
    errors: int
    log: list[str]


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(**ticket.to_dict())


def _refresher(
    connector: HubSpotTicketConnector,
    store: SqlTicketStore,
    stage_cache: PipelineStageCache,
) -> TicketRefresher:
    return TicketRefresher(connector, store, resolver=ReferenceDataResolver(connector, stage_cache))


@router.get("", response_model=TicketListResponse)
async def list_tickets(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    start_date: Optional[date] = Query(None, description="Created on or after (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Created on or before (YYYY-MM-DD)"),
    search: Optional[str] = Query(None, description="Matches subject, company or content"),
    category: Optional[str] = Query(None),
    owner: Optional[str] = Query(None),
    stage: Optional[str] = Query(None),
    sort: str = Query("created_at", pattern="^(created_at|synced_at|subject)$"),
    store: SqlTicketStore = Depends(get_ticket_store),
) -> TicketListResponse:
    """List stored tickets, newest first by default."""
    list_filter = TicketListFilter(
        created_from=datetime.combine(start_date, time.min) if start_date else None,
        created_to=datetime.combine(end_date, time.max) if end_date else None,
        search=search,
        category=category,
        owner=owner,
        pipeline_stage=stage,
    )
    total = await store.count(list_filter)
    tickets = await store.list_page(list_filter, sort=sort, limit=limit, offset=(page - 1) * limit)
    return TicketListResponse(
        tickets=[_to_response(ticket) for ticket in tickets],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            total_pages=(total + limit - 1) // limit,
        ),
    )


@router.get("/filters", response_model=TicketFiltersResponse)
async def get_ticket_filters(
    store: SqlTicketStore = Depends(get_ticket_store),
) -> TicketFiltersResponse:
    """Values for the category and owner dropdowns."""
    values = await store.distinct_filter_values()
    return TicketFiltersResponse(**values)


@router.post("/refresh-all", response_model=RefreshAllResponse)
async def refresh_all_tickets(
    connector: HubSpotTicketConnector = Depends(get_connector),
    store: SqlTicketStore = Depends(get_ticket_store),
    stage_cache: PipelineStageCache = Depends(get_stage_cache),
) -> RefreshAllResponse:
    """Re-fetch every stored ticket from HubSpot."""
    summary = await _refresher(connector, store, stage_cache).refresh_all()
    logger.info(
        "Refreshed all tickets",
        extra={"total": summary["total"], "success": summary["success"], "errors": summary["errors"]},
    )
    return RefreshAllResponse(**summary)


@router.get("/{external_id}", response_model=TicketResponse)
async def get_ticket(
    external_id: str,
    store: SqlTicketStore = Depends(get_ticket_store),
) -> TicketResponse:
    ticket = await store.find_by_external_id(external_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return _to_response(ticket)


@router.post("/{external_id}/refresh", response_model=TicketResponse)
async def refresh_ticket(
    external_id: str,
    connector: HubSpotTicketConnector = Depends(get_connector),
    store: SqlTicketStore = Depends(get_ticket_store),
    stage_cache: PipelineStageCache = Depends(get_stage_cache),
) -> TicketResponse:
    """Re-fetch one ticket from HubSpot and store it."""
    try:
        outcome = await _refresher(connector, store, stage_cache).refresh_ticket(external_id)
    except HubSpotApiError as exc:
        logger.warning("Refresh of ticket %s failed: %s", external_id, exc)
        raise HTTPException(status_code=502, detail=f"HubSpot request failed: {exc}") from exc

    if not outcome.found:
        raise HTTPException(status_code=404, detail="Ticket not found in HubSpot")

    ticket = await store.find_by_external_id(external_id)
    if ticket is None:
        raise HTTPException(status_code=500, detail="Ticket was not stored")
    return _to_response(ticket)

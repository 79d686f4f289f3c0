"""
FastAPI dependencies shared by the routers.

Tests replace these through ``app.dependency_overrides``.
"""

from ticketsync.config import settings
from ticketsync.connectors.hubspot import HubSpotTicketConnector
from ticketsync.connectors.persistence import SqlTicketStore, SyncLogStore
from ticketsync.connectors.resolution import PipelineStageCache

# One per process: pipeline stages survive across runs
_stage_cache = PipelineStageCache(ttl_seconds=settings.PIPELINE_STAGE_CACHE_TTL_SECONDS)


def get_stage_cache() -> PipelineStageCache:
    return _stage_cache


def get_connector() -> HubSpotTicketConnector:
    """A fresh connector (and rate limiter) per request."""
    return HubSpotTicketConnector()


def get_ticket_store() -> SqlTicketStore:
    return SqlTicketStore()


def get_sync_log_store() -> SyncLogStore:
    return SyncLogStore()

"""
Re-fetch stored tickets from HubSpot one by one and upsert the fresh copy.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ticketsync.config import settings
from ticketsync.connectors.base import Err
from ticketsync.connectors.hubspot import HubSpotTicketConnector
from ticketsync.connectors.models import NormalizedTicket, ReferenceMaps
from ticketsync.connectors.persistence import TicketStore
from ticketsync.connectors.resolution import ReferenceDataResolver
from ticketsync.services.ticket_transformer import TicketTransformer

logger = logging.getLogger(__name__)


@dataclass
class RefreshOutcome:
    external_id: str
    found: bool
    ticket: Optional[NormalizedTicket] = None


class TicketRefresher:
    """Refreshes single tickets, or every stored ticket in turn."""

    def __init__(
        self,
        connector: HubSpotTicketConnector,
        store: TicketStore,
        *,
        resolver: Optional[ReferenceDataResolver] = None,
        transformer: Optional[TicketTransformer] = None,
        delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.connector = connector
        self.store = store
        self.resolver = resolver or ReferenceDataResolver(connector)
        self.transformer = transformer or TicketTransformer()
        self.delay: float = delay if delay is not None else settings.REFRESH_DELAY_SECONDS
        self._sleep = sleep

    async def refresh_ticket(self, external_id: str, refs: Optional[ReferenceMaps] = None) -> RefreshOutcome:
        """
        Fetch one ticket and upsert it.

        Returns ``found=False`` when HubSpot answers 404.

        Raises:
            HubSpotApiError: any other failed request.
        """
        result = await self.connector.fetch_ticket(external_id)
        if isinstance(result, Err):
            if result.error.is_not_found:
                logger.info("[HubSpot] Ticket %s not found", external_id)
                return RefreshOutcome(external_id=external_id, found=False)
            raise result.error

        if refs is None:
            refs = await self.resolver.resolve_all()
        ticket = self.transformer.transform(result.value, refs)
        await self.store.upsert(ticket)
        return RefreshOutcome(external_id=external_id, found=True, ticket=ticket)

    async def refresh_all(self) -> dict[str, Any]:
        """Refresh every stored ticket. Per-ticket failures are counted, never raised."""
        external_ids = await self.store.list_external_ids()
        log: list[str] = [f"Refreshing {len(external_ids)} tickets"]
        success = 0
        errors = 0

        refs = await self.resolver.resolve_all() if external_ids else ReferenceMaps()
        for index, external_id in enumerate(external_ids):
            try:
                outcome = await self.refresh_ticket(external_id, refs=refs)
            except Exception as exc:
                errors += 1
                log.append(f"Failed to refresh ticket {external_id}: {exc}")
                logger.warning(
                    "[Sync] Ticket refresh failed",
                    extra={"ticket_id": external_id, "error": str(exc)},
                )
            else:
                if outcome.found:
                    success += 1
                    log.append(f"Refreshed ticket {external_id}")
                else:
                    errors += 1
                    log.append(f"Ticket {external_id} no longer exists in HubSpot")

            if index < len(external_ids) - 1 and self.delay > 0:
                await self._sleep(self.delay)

        log.append(f"Refresh complete: {success} succeeded, {errors} failed")
        return {"total": len(external_ids), "success": success, "errors": errors, "log": log}

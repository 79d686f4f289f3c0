"""
HubSpot ticket connector.

Responsibilities:
- Authenticate with HubSpot using a private app token
- Search tickets by creation date, following cursor pagination
- Fetch single tickets and the reference data used to label them
  (owners, ticket pipelines, property options)
- Keep every request under the search API rate limit
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from ticketsync.config import settings
from ticketsync.connectors.base import ApiResult, BaseConnector, Err, Ok, unwrap
from ticketsync.connectors.models import RemoteTicket
from ticketsync.connectors.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

TICKET_PROPERTIES: tuple[str, ...] = (
    "hs_ticket_id",
    "hs_ticket_category",
    "hubspot_owner_id",
    "hs_primary_company_name",
    "subject",
    "source_type",
    "content",
    "hs_pipeline_stage",
    "support_object",
    "createdate",
)

SEARCH_ENDPOINT = "/crm/v3/objects/tickets/search"

# (fetched, estimated_total, message)
FetchProgressCallback = Callable[[int, int, str], None]


def to_epoch_ms(dt: datetime) -> int:
    """Milliseconds since the epoch. Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


@dataclass(frozen=True)
class TicketSearchFilter:
    """Creation-date bounds for a ticket search. ``None`` means unbounded."""

    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    @classmethod
    def days_back(cls, days: Optional[int], now: Optional[datetime] = None) -> "TicketSearchFilter":
        if days is None:
            return cls()
        now = now or datetime.now(timezone.utc)
        return cls(created_after=now - timedelta(days=days))

    def to_filter_groups(self) -> list[dict[str, Any]]:
        filters: list[dict[str, str]] = []
        if self.created_after is not None:
            filters.append({
                "propertyName": "createdate",
                "operator": "GTE",
                "value": str(to_epoch_ms(self.created_after)),
            })
        if self.created_before is not None:
            filters.append({
                "propertyName": "createdate",
                "operator": "LTE",
                "value": str(to_epoch_ms(self.created_before)),
            })
        return [{"filters": filters}] if filters else []


@dataclass
class SearchPage:
    """One page of search results."""

    tickets: list[RemoteTicket]
    next_after: Optional[str]
    total: Optional[int]


class HubSpotTicketConnector(BaseConnector):
    """Connector for HubSpot support tickets."""

    source_system = "hubspot"

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        page_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(access_token, **kwargs)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.page_size: int = page_size or settings.HUBSPOT_PAGE_SIZE
        self.max_pages: int = max_pages or settings.HUBSPOT_MAX_PAGES
        self.page_delay: float = page_delay if page_delay is not None else settings.HUBSPOT_PAGE_DELAY_SECONDS
        self._sleep = sleep

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> ApiResult[dict[str, Any]]:
        """Rate-limited request."""
        await self.rate_limiter.wait_if_needed()
        return await super()._make_request(method, endpoint, params=params, json_data=json_data)

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    async def search_tickets(
        self,
        search_filter: Optional[TicketSearchFilter] = None,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ApiResult[SearchPage]:
        """Fetch one page of the ticket search."""
        body: dict[str, Any] = {
            "properties": list(TICKET_PROPERTIES),
            "limit": limit or self.page_size,
            "filterGroups": (search_filter or TicketSearchFilter()).to_filter_groups(),
        }
        if after:
            body["after"] = after

        result = await self._make_request("POST", SEARCH_ENDPOINT, json_data=body)
        if isinstance(result, Err):
            return result

        data: dict[str, Any] = result.value
        tickets = [RemoteTicket.from_api(item) for item in data.get("results", [])]
        next_after: Optional[str] = ((data.get("paging") or {}).get("next") or {}).get("after")
        total = data.get("total")
        return Ok(SearchPage(
            tickets=tickets,
            next_after=str(next_after) if next_after else None,
            total=int(total) if isinstance(total, (int, float)) else None,
        ))

    async def fetch_all_tickets(
        self,
        search_filter: Optional[TicketSearchFilter] = None,
        page_size: Optional[int] = None,
        on_progress: Optional[FetchProgressCallback] = None,
    ) -> list[RemoteTicket]:
        """
        Fetch every ticket matching the filter, following ``paging.next.after``.

        Stops when no cursor is returned or after ``max_pages`` pages, in which
        case the tickets collected so far are returned.

        Raises:
            HubSpotApiError: any page failed. Nothing is returned in that case.
        """
        limit: int = page_size or self.page_size
        all_tickets: list[RemoteTicket] = []
        after: Optional[str] = None
        reported_total: Optional[int] = None
        page_count = 0

        while True:
            page: SearchPage = unwrap(await self.search_tickets(search_filter, after=after, limit=limit))
            page_count += 1
            all_tickets.extend(page.tickets)
            after = page.next_after

            if page_count == 1:
                reported_total = page.total
                logger.info(
                    "[HubSpot] Ticket search: first page returned %d results (total=%s)",
                    len(page.tickets), reported_total,
                )

            fetched = len(all_tickets)
            if reported_total is not None:
                estimated_total = max(reported_total, fetched)
            elif after:
                estimated_total = fetched + limit
            else:
                estimated_total = fetched

            if on_progress is not None:
                on_progress(
                    fetched,
                    estimated_total,
                    f"Fetched {fetched}/{estimated_total} tickets (page {page_count})",
                )

            if not after:
                break

            if page_count >= self.max_pages:
                logger.warning(
                    "[HubSpot] Ticket search stopped at page limit (%d pages, %d tickets); more results remain",
                    self.max_pages, fetched,
                )
                break

            if self.page_delay > 0:
                await self._sleep(self.page_delay)

        logger.info("[HubSpot] Ticket search: fetched %d pages, %d tickets", page_count, len(all_tickets))
        return all_tickets

    async def fetch_ticket(self, ticket_id: str) -> ApiResult[RemoteTicket]:
        """Fetch a single ticket by HubSpot id."""
        result = await self._make_request(
            "GET",
            f"/crm/v3/objects/tickets/{ticket_id}",
            params={"properties": ",".join(TICKET_PROPERTIES)},
        )
        if isinstance(result, Err):
            return result
        return Ok(RemoteTicket.from_api(result.value))

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def fetch_owners(self) -> ApiResult[list[dict[str, Any]]]:
        """
        Fetch all HubSpot owners from the account.

        Requires the ``crm.objects.owners.read`` scope.

        Returns:
            List of owner dicts with id, email, firstName, lastName.
        """
        results: list[dict[str, Any]] = []
        after: str | None = None
        page_count = 0

        while True:
            page_count += 1
            params: dict[str, str | int] = {"limit": 100}
            if after:
                params["after"] = after

            result = await self._make_request("GET", "/crm/v3/owners", params=params)
            if isinstance(result, Err):
                return result

            data: dict[str, Any] = result.value
            for o in data.get("results", []):
                results.append({
                    "id": str(o.get("id", "")),
                    "email": o.get("email"),
                    "firstName": o.get("firstName"),
                    "lastName": o.get("lastName"),
                })

            paging: dict[str, Any] | None = data.get("paging")
            if not (paging and (paging.get("next") or {}).get("after")):
                break
            if page_count >= self.max_pages:
                logger.warning(
                    "[HubSpot] Owner listing stopped at page limit (%d pages, %d owners)",
                    self.max_pages, len(results),
                )
                break
            after = paging["next"]["after"]

        return Ok(results)

    async def get_pipelines(self) -> ApiResult[list[dict[str, Any]]]:
        """Fetch all ticket pipelines with their stages."""
        result = await self._make_request("GET", "/crm/v3/pipelines/tickets")
        if isinstance(result, Err):
            return result
        return Ok(list(result.value.get("results", [])))

    async def get_property_options(self, property_name: str) -> ApiResult[list[dict[str, Any]]]:
        """Fetch the enumeration options of a ticket property."""
        result = await self._make_request("GET", f"/crm/v3/properties/tickets/{property_name}")
        if isinstance(result, Err):
            return result
        return Ok(list(result.value.get("options", [])))

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ticketsync.connectors.hubspot import SEARCH_ENDPOINT, HubSpotTicketConnector
from ticketsync.connectors.rate_limiter import SlidingWindowRateLimiter
from ticketsync.models.database import init_db


def make_ticket(ticket_id: str, **properties: Any) -> dict[str, Any]:
    """A ticket payload as the HubSpot search API returns it."""
    props: dict[str, Any] = {
        "hs_ticket_id": ticket_id,
        "subject": f"Ticket {ticket_id}",
        "content": "Printer on floor 3 is jammed",
        "hs_primary_company_name": "Acme",
        "createdate": "2024-05-01T10:00:00.000Z",
    }
    props.update(properties)
    return {"id": ticket_id, "createdAt": props["createdate"], "properties": props}


class FakeHubSpot:
    """In-memory HubSpot API served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.tickets: list[dict[str, Any]] = []
        self.report_total = True
        self.endless = False
        self.owners: list[dict[str, Any]] = [
            {"id": "1", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
            {"id": "2", "firstName": "", "lastName": "", "email": "grace@example.com"},
        ]
        self.pipelines: list[dict[str, Any]] = [
            {"id": "0", "stages": [{"id": "1", "label": "New"}, {"id": "4", "label": "Closed"}]},
        ]
        self.property_options: dict[str, list[dict[str, str]]] = {
            "hs_ticket_category": [
                {"value": "BILLING", "label": "Billing"},
                {"value": "BUG", "label": "Bug report"},
            ],
            "support_object": [{"value": "printer", "label": "Printer"}],
        }
        # path prefix -> status code to answer with
        self.failures: dict[str, int] = {}
        # search page number (1-based) -> status code
        self.search_failures: dict[int, int] = {}
        self.requests: list[httpx.Request] = []

    # -- inspection -----------------------------------------------------

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def search_calls(self) -> list[httpx.Request]:
        return self.calls_to(SEARCH_ENDPOINT)

    def search_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.search_calls]

    # -- wiring ---------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def connector(self, **kwargs: Any) -> HubSpotTicketConnector:
        kwargs.setdefault("page_delay", 0)
        kwargs.setdefault("rate_limiter", SlidingWindowRateLimiter(max_calls=1000, window_ms=10_000))
        return HubSpotTicketConnector("test-token", transport=self.transport(), **kwargs)

    # -- handler --------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for prefix, status in self.failures.items():
            if path.startswith(prefix):
                return httpx.Response(status, json={"message": "boom"})

        if path == SEARCH_ENDPOINT:
            return self._search(request)
        if path == "/crm/v3/owners":
            return self._owners(request)
        if path == "/crm/v3/pipelines/tickets":
            return httpx.Response(200, json={"results": self.pipelines})
        if path.startswith("/crm/v3/properties/tickets/"):
            name = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"name": name, "options": self.property_options.get(name, [])})
        if path.startswith("/crm/v3/objects/tickets/"):
            ticket_id = path.rsplit("/", 1)[-1]
            for ticket in self.tickets:
                if ticket["id"] == ticket_id:
                    return httpx.Response(200, json=ticket)
            return httpx.Response(404, json={"message": "resource not found"})
        return httpx.Response(404, json={"message": f"unknown path {path}"})

    def _search(self, request: httpx.Request) -> httpx.Response:
        page_number = len(self.search_calls)
        if page_number in self.search_failures:
            return httpx.Response(self.search_failures[page_number], json={"message": "search failed"})

        body = json.loads(request.content)
        offset = int(body.get("after") or 0)
        limit = int(body["limit"])

        if self.endless:
            results = [make_ticket(str(offset + i)) for i in range(limit)]
            payload: dict[str, Any] = {"results": results, "paging": {"next": {"after": str(offset + limit)}}}
            return httpx.Response(200, json=payload)

        results = self.tickets[offset:offset + limit]
        payload = {"results": results}
        if offset + limit < len(self.tickets):
            payload["paging"] = {"next": {"after": str(offset + limit)}}
        if self.report_total:
            payload["total"] = len(self.tickets)
        return httpx.Response(200, json=payload)

    def _owners(self, request: httpx.Request) -> httpx.Response:
        after = int(request.url.params.get("after") or 0)
        page = self.owners[after:after + 1]
        payload: dict[str, Any] = {"results": page}
        if after + 1 < len(self.owners):
            payload["paging"] = {"next": {"after": str(after + 1)}}
        return httpx.Response(200, json=payload)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_hubspot() -> FakeHubSpot:
    return FakeHubSpot()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'tickets.sqlite'}"


@pytest.fixture
def open_db(db_url: str) -> Callable[[], Any]:
    """Async context manager yielding a session factory on a fresh SQLite file.

    The engine lives inside the caller's event loop and is disposed on exit.
    """

    @asynccontextmanager
    async def _open() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
        engine = create_async_engine(db_url)
        await init_db(engine)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def ticket_payloads() -> Callable[..., list[dict[str, Any]]]:
    def _make(count: int, start: int = 1, **properties: Any) -> list[dict[str, Any]]:
        return [make_ticket(str(i), **properties) for i in range(start, start + count)]

    return _make

import asyncio
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from ticketsync.connectors import persistence
from ticketsync.connectors.models import CategoryValue, NormalizedTicket
from ticketsync.connectors.persistence import SqlTicketStore, SyncLogStore, TicketListFilter, ticket_row
from ticketsync.services.ticket_sync import SyncCounts, SyncRun, SyncState


def _ticket(external_id: str, **fields) -> NormalizedTicket:
    values = {
        "ticket_number": external_id,
        "owner_id": "1",
        "owner_name": "Ada Lovelace",
        "category": CategoryValue.from_pairs(["A", "B"], ["Billing", "Bug report"]),
        "pipeline_stage": "1",
        "pipeline_stage_label": "New",
        "subject": f"Ticket {external_id}",
        "content": "Printer jammed",
        "company_name": "Acme",
        "created_date": "2024-05-01T10:00:00.000Z",
        "synced_at": "2024-05-02T08:30:00Z",
    }
    values.update(fields)
    return NormalizedTicket(external_id=external_id, **values)


def test_upsert_is_idempotent_and_overwrites_fields(open_db) -> None:
    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            await store.upsert(_ticket("1"))
            await store.upsert(_ticket("1"))
            count_after_repeat = await store.count()
            await store.upsert(_ticket("1", subject="Updated", owner_name="Unknown"))
            return count_after_repeat, await store.count(), await store.find_by_external_id("1")

    count_after_repeat, count_after_update, row = asyncio.run(_run())

    assert count_after_repeat == 1
    assert count_after_update == 1
    assert row.subject == "Updated"
    assert row.owner_name == "Unknown"


def test_upsert_batch_flattens_category_and_parses_created_at(open_db) -> None:
    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            written = await store.upsert_batch([_ticket("1"), _ticket("2", created_date="garbage")])
            return written, await store.find_by_external_id("1"), await store.find_by_external_id("2")

    written, first, second = asyncio.run(_run())

    assert written == 2
    assert first.category == {"count": 2, "ids": ["A", "B"], "labels": ["Billing", "Bug report"]}
    assert first.category_value == "A;B"
    assert first.category_label == "Billing; Bug report"
    assert first.created_at == datetime(2024, 5, 1, 10, 0)
    assert first.created_date == "2024-05-01T10:00:00.000Z"
    assert second.created_at is None
    assert second.created_date == "garbage"


def test_upsert_batch_with_repeated_ticket_keeps_last_value(open_db) -> None:
    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            written = await store.upsert_batch([
                _ticket("1", subject="First"),
                _ticket("2"),
                _ticket("1", subject="Second"),
            ])
            return written, await store.count(), await store.find_by_external_id("1")

    written, stored, row = asyncio.run(_run())

    assert written == 2
    assert stored == 2
    assert row.subject == "Second"


def test_upsert_batch_is_all_or_nothing(open_db, monkeypatch) -> None:
    def row_with_broken_third_ticket(ticket: NormalizedTicket) -> dict:
        row = ticket_row(ticket)
        if ticket.external_id == "3":
            row["synced_at"] = None
        return row

    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            await store.upsert(_ticket("1", subject="Original"))
            monkeypatch.setattr(persistence, "ticket_row", row_with_broken_third_ticket)

            with pytest.raises(IntegrityError):
                await store.upsert_batch([_ticket("1", subject="Changed"), _ticket("2"), _ticket("3")])
            return await store.count(), await store.find_by_external_id("1")

    stored, row = asyncio.run(_run())

    assert stored == 1
    assert row.subject == "Original"


def test_missing_ticket_is_none(open_db) -> None:
    async def _run():
        async with open_db() as factory:
            return await SqlTicketStore(factory).find_by_external_id("nope")

    assert asyncio.run(_run()) is None


def test_list_page_filters_and_sorts(open_db) -> None:
    tickets = [
        _ticket("1", created_date="2024-05-01T10:00:00.000Z", subject="Printer down"),
        _ticket("2", created_date="2024-05-10T10:00:00.000Z", subject="Invoice wrong", company_name="Globex"),
        _ticket("3", created_date="2024-05-20T10:00:00.000Z", subject="Login fails", owner_name="Grace"),
    ]

    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            await store.upsert_batch(tickets)
            newest_first = await store.list_page()
            by_subject = await store.list_page(sort="subject")
            in_range = await store.list_page(TicketListFilter(
                created_from=datetime(2024, 5, 5),
                created_to=datetime(2024, 5, 15),
            ))
            searched = await store.list_page(TicketListFilter(search="globex"))
            by_owner = await store.list_page(TicketListFilter(owner="Grace"))
            second_page = await store.list_page(limit=2, offset=2)
            total_in_range = await store.count(TicketListFilter(created_from=datetime(2024, 5, 5)))
            return newest_first, by_subject, in_range, searched, by_owner, second_page, total_in_range

    newest_first, by_subject, in_range, searched, by_owner, second_page, total_in_range = asyncio.run(_run())

    assert [t.external_id for t in newest_first] == ["3", "2", "1"]
    assert [t.subject for t in by_subject] == ["Invoice wrong", "Login fails", "Printer down"]
    assert [t.external_id for t in in_range] == ["2"]
    assert [t.external_id for t in searched] == ["2"]
    assert [t.external_id for t in by_owner] == ["3"]
    assert [t.external_id for t in second_page] == ["1"]
    assert total_in_range == 2


def test_distinct_filter_values_and_external_ids(open_db) -> None:
    async def _run():
        async with open_db() as factory:
            store = SqlTicketStore(factory)
            await store.upsert_batch([
                _ticket("2", owner_name="Grace"),
                _ticket("1", category=CategoryValue.from_pairs(["C"], ["Hardware"])),
            ])
            return await store.distinct_filter_values(), await store.list_external_ids()

    values, external_ids = asyncio.run(_run())

    assert values == {
        "categories": ["Billing", "Bug report", "Hardware"],
        "owners": ["Ada Lovelace", "Grace"],
    }
    assert external_ids == ["1", "2"]


def test_sync_log_store_records_and_aggregates(open_db) -> None:
    finished = SyncRun(
        trigger="sync_7_days",
        range_start=datetime(2024, 5, 1),
        state=SyncState.DONE,
        counts=SyncCounts(fetched=10, processed=10, saved=9, failed=1),
        log=["Starting sync_7_days sync", "[100%] done"],
        started_at=datetime(2024, 5, 8, 9, 0),
        completed_at=datetime(2024, 5, 8, 9, 1),
    )
    failed = SyncRun(
        trigger="sync_all",
        state=SyncState.FAILED,
        counts=SyncCounts(fetched=0),
        error="Failed to fetch tickets",
    )

    async def _run():
        async with open_db() as factory:
            log_store = SyncLogStore(factory)
            log_id = await log_store.record(finished)
            await log_store.record(failed)
            return (
                log_id,
                await log_store.list_page(),
                await log_store.list_page(status="success"),
                await log_store.stats(),
            )

    log_id, all_logs, successes, stats = asyncio.run(_run())

    assert len(all_logs) == 2
    assert [entry.id for entry in successes] == [log_id]
    entry = successes[0].to_dict()
    assert entry["sync_type"] == "sync_7_days"
    assert entry["status"] == "success"
    assert entry["total_saved"] == 9
    assert entry["total_failed"] == 1
    assert entry["logs"] == ["Starting sync_7_days sync", "[100%] done"]
    assert entry["range_start"] == "2024-05-01T00:00:00Z"
    assert stats == {"total_syncs": 2, "total_fetched": 10, "total_saved": 9}

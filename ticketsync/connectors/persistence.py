"""
Storage port for normalized tickets and sync logs.

``TicketStore`` is the interface the sync pipeline writes through;
``SqlTicketStore`` implements it on SQLAlchemy async sessions. Upserts use
the dialect ``INSERT ... ON CONFLICT (external_id) DO UPDATE`` of whichever
engine is bound (PostgreSQL or SQLite), so re-syncing a ticket overwrites
every column except its id. Nothing here ever deletes a ticket.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketsync.connectors.models import NormalizedTicket
from ticketsync.models.database import get_session_factory
from ticketsync.models.sync_log import SyncLog
from ticketsync.models.ticket import Ticket
from ticketsync.services.ticket_transformer import parse_created_date

if TYPE_CHECKING:
    from ticketsync.services.ticket_sync import SyncRun

logger = logging.getLogger(__name__)

CONFLICT_KEYS: list[str] = ["external_id"]

UPDATABLE_COLUMNS: list[str] = [
    "ticket_number",
    "owner_id",
    "owner_name",
    "category",
    "category_count",
    "category_value",
    "category_label",
    "pipeline_stage",
    "pipeline_stage_label",
    "subject",
    "content",
    "company_name",
    "source_type",
    "support_object",
    "support_object_label",
    "created_date",
    "created_at",
    "synced_at",
]

# sort key -> ORDER BY clause
SORT_KEYS: dict[str, Any] = {
    "created_at": Ticket.created_at.desc().nulls_last(),
    "synced_at": Ticket.synced_at.desc(),
    "subject": Ticket.subject.asc(),
}
DEFAULT_SORT = "created_at"


def ticket_row(ticket: NormalizedTicket) -> dict[str, Any]:
    """Flatten a NormalizedTicket into a ``tickets`` row."""
    row: dict[str, Any] = ticket.model_dump()
    category = ticket.category
    row["category_count"] = category.count
    row["category_value"] = ";".join(category.ids)
    row["category_label"] = "; ".join(category.labels)
    row["created_at"] = parse_created_date(ticket.created_date)
    return row


def _insert_for(session: AsyncSession) -> Any:
    dialect: str = session.bind.dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Upsert is not supported for the {dialect!r} dialect")


@dataclass(frozen=True)
class TicketListFilter:
    """Filters for listing stored tickets. Unset fields do not filter."""

    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    search: Optional[str] = None
    category: Optional[str] = None
    owner: Optional[str] = None
    pipeline_stage: Optional[str] = None

    def conditions(self) -> list[Any]:
        conditions: list[Any] = []
        if self.created_from is not None:
            conditions.append(Ticket.created_at >= self.created_from)
        if self.created_to is not None:
            conditions.append(Ticket.created_at <= self.created_to)
        if self.search:
            pattern = f"%{self.search}%"
            conditions.append(or_(
                Ticket.subject.ilike(pattern),
                Ticket.company_name.ilike(pattern),
                Ticket.content.ilike(pattern),
            ))
        if self.category:
            conditions.append(or_(
                Ticket.category_label.contains(self.category),
                Ticket.category_value.contains(self.category),
            ))
        if self.owner:
            conditions.append(Ticket.owner_name == self.owner)
        if self.pipeline_stage:
            conditions.append(or_(
                Ticket.pipeline_stage == self.pipeline_stage,
                Ticket.pipeline_stage_label == self.pipeline_stage,
            ))
        return conditions


class TicketStore(Protocol):
    """Where normalized tickets are persisted."""

    async def find_by_external_id(self, external_id: str) -> Optional[Ticket]: ...

    async def upsert(self, ticket: NormalizedTicket) -> None: ...

    async def upsert_batch(self, tickets: Sequence[NormalizedTicket]) -> int: ...

    async def count(self, list_filter: Optional[TicketListFilter] = None) -> int: ...

    async def list_page(
        self,
        list_filter: Optional[TicketListFilter] = None,
        sort: str = DEFAULT_SORT,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Ticket]: ...

    async def list_external_ids(self) -> list[str]: ...

    async def distinct_filter_values(self) -> dict[str, list[str]]: ...


class SqlTicketStore:
    """TicketStore backed by the ``tickets`` table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def find_by_external_id(self, external_id: str) -> Optional[Ticket]:
        async with self._session_factory() as session:
            return await session.get(Ticket, external_id)

    async def upsert(self, ticket: NormalizedTicket) -> None:
        await self.upsert_batch([ticket])

    async def upsert_batch(self, tickets: Sequence[NormalizedTicket]) -> int:
        """
        Write all tickets in one transaction. Returns the number of distinct
        tickets written.

        A ticket repeated in the batch is written once, with its last value.
        """
        if not tickets:
            return 0

        # One statement may not touch the same conflict key twice on PostgreSQL
        latest: dict[str, dict[str, Any]] = {}
        for ticket in tickets:
            latest[ticket.external_id] = ticket_row(ticket)
        rows = list(latest.values())
        async with self._session_factory() as session:
            insert = _insert_for(session)
            stmt = insert(Ticket.__table__).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=CONFLICT_KEYS,
                set_={col: stmt.excluded[col] for col in UPDATABLE_COLUMNS},
            )
            try:
                await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.debug("Upserted %d tickets", len(rows))
        return len(rows)

    async def count(self, list_filter: Optional[TicketListFilter] = None) -> int:
        query = select(func.count()).select_from(Ticket)
        if list_filter is not None:
            query = query.where(*list_filter.conditions())
        async with self._session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def list_page(
        self,
        list_filter: Optional[TicketListFilter] = None,
        sort: str = DEFAULT_SORT,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Ticket]:
        if sort not in SORT_KEYS:
            raise ValueError(f"Unknown sort key: {sort}")
        query = select(Ticket)
        if list_filter is not None:
            query = query.where(*list_filter.conditions())
        query = query.order_by(SORT_KEYS[sort], Ticket.external_id).limit(limit).offset(offset)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_external_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(Ticket.external_id).order_by(Ticket.external_id))
            return list(result.scalars().all())

    async def distinct_filter_values(self) -> dict[str, list[str]]:
        """Distinct category labels and owner names present in storage."""
        async with self._session_factory() as session:
            label_rows = await session.execute(select(Ticket.category_label).distinct())
            owner_rows = await session.execute(
                select(Ticket.owner_name).where(Ticket.owner_name != "").distinct()
            )
            categories: set[str] = set()
            for combined in label_rows.scalars().all():
                categories.update(label.strip() for label in (combined or "").split(";") if label.strip())
            owners = list(owner_rows.scalars().all())

        return {"categories": sorted(categories), "owners": sorted(owners)}


class SyncLogStore:
    """Writes and reads the ``sync_logs`` table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def record(self, run: "SyncRun") -> str:
        """Persist a finished run. Returns the log id."""
        log_id = str(uuid.uuid4())
        entry = SyncLog(
            id=log_id,
            sync_type=run.trigger,
            range_start=run.range_start,
            range_end=run.range_end,
            status="success" if run.succeeded else "failed",
            total_fetched=run.counts.fetched,
            total_processed=run.counts.processed,
            total_saved=run.counts.saved,
            total_failed=run.counts.failed,
            logs=list(run.log),
            error_message=run.error,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()
        return log_id

    @staticmethod
    def _conditions(sync_type: Optional[str], status: Optional[str]) -> list[Any]:
        conditions: list[Any] = []
        if sync_type:
            conditions.append(SyncLog.sync_type == sync_type)
        if status:
            conditions.append(SyncLog.status == status)
        return conditions

    async def list_page(
        self,
        sync_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SyncLog]:
        query = (
            select(SyncLog)
            .where(*self._conditions(sync_type, status))
            .order_by(SyncLog.created_at.desc(), SyncLog.id)
            .limit(limit)
            .offset(offset)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stats(self, sync_type: Optional[str] = None, status: Optional[str] = None) -> dict[str, int]:
        query = select(
            func.count(SyncLog.id),
            func.coalesce(func.sum(SyncLog.total_fetched), 0),
            func.coalesce(func.sum(SyncLog.total_saved), 0),
        ).where(*self._conditions(sync_type, status))
        async with self._session_factory() as session:
            total_syncs, total_fetched, total_saved = (await session.execute(query)).one()
        return {
            "total_syncs": int(total_syncs),
            "total_fetched": int(total_fetched),
            "total_saved": int(total_saved),
        }

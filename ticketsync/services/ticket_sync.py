"""
Ticket sync orchestration.

One ``SyncOrchestrator`` drives one run through
``idle -> fetching -> processing -> saving -> done | failed``:

- fetching (0-30%):   every ticket in the requested window, paginated
- processing (30-70%): labels resolved once, tickets normalized in
  concurrent batches; bad tickets are logged and dropped
- saving (70-100%):   upserts in sequential batches; failed writes are
  logged and counted

Fetch errors, an invalid trigger, or every ticket failing to normalize end
the run as ``failed``. Tickets already saved stay saved.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from ticketsync.config import settings
from ticketsync.connectors.base import HubSpotApiError
from ticketsync.connectors.hubspot import HubSpotTicketConnector, TicketSearchFilter
from ticketsync.connectors.models import NormalizedTicket, ReferenceMaps, RemoteTicket
from ticketsync.connectors.persistence import SyncLogStore, TicketStore
from ticketsync.connectors.resolution import ReferenceDataResolver
from ticketsync.services.ticket_transformer import TicketTransformer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (percent 0-100, message)
ProgressCallback = Callable[[int, str], None]

FETCH_WEIGHT = 30
PROCESS_WEIGHT = 40
SAVE_WEIGHT = 30


class InvalidSyncTriggerError(ValueError):
    """Unknown trigger, or a range trigger with missing/inverted bounds."""


class SyncFetchError(RuntimeError):
    """Fetching tickets from HubSpot failed."""


class SyncAbortedError(RuntimeError):
    """The run cannot continue (every fetched ticket failed to normalize)."""


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    DONE = "done"
    FAILED = "failed"


class SyncTrigger(str, Enum):
    SYNC_ALL = "sync_all"
    SYNC_1_DAY = "sync_1_day"
    SYNC_7_DAYS = "sync_7_days"
    SYNC_30_DAYS = "sync_30_days"
    SYNC_RANGE = "sync_range"


TRIGGER_DAYS: dict[SyncTrigger, Optional[int]] = {
    SyncTrigger.SYNC_ALL: None,
    SyncTrigger.SYNC_1_DAY: 1,
    SyncTrigger.SYNC_7_DAYS: 7,
    SyncTrigger.SYNC_30_DAYS: 30,
}


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return _as_utc(dt).replace(tzinfo=None)


def chunks(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass(frozen=True)
class SyncRequest:
    """What to sync: a trigger name plus bounds for ``sync_range``."""

    trigger: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_search_filter(self, now: Optional[datetime] = None) -> TicketSearchFilter:
        try:
            trigger = SyncTrigger(self.trigger)
        except ValueError:
            raise InvalidSyncTriggerError(f"Invalid sync type: {self.trigger!r}") from None

        if trigger is SyncTrigger.SYNC_RANGE:
            if self.start is None:
                raise InvalidSyncTriggerError("sync_range requires a start date")
            start = _as_utc(self.start)
            end = _as_utc(self.end) if self.end is not None else None
            if end is not None and start >= end:
                raise InvalidSyncTriggerError("sync_range start must be before end")
            return TicketSearchFilter(created_after=start, created_before=end)

        return TicketSearchFilter.days_back(TRIGGER_DAYS[trigger], now=now)


@dataclass
class SyncCounts:
    fetched: int = 0
    processed: int = 0
    saved: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "saved": self.saved,
            "failed": self.failed,
        }


@dataclass
class SyncRun:
    """Mutable record of one run. ``log`` is the user-visible run log."""

    trigger: str
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    state: SyncState = SyncState.IDLE
    counts: SyncCounts = field(default_factory=SyncCounts)
    log: list[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is SyncState.DONE


class SyncResult(BaseModel):
    """Outcome returned to the caller of a sync."""

    success: bool
    message: str
    state: SyncState
    counts: dict[str, int] = Field(default_factory=dict)
    log: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    # invalid_trigger | fetch | aborted | internal
    error_type: Optional[str] = None
    sync_log_id: Optional[str] = None


class SyncOrchestrator:
    """
    Runs one sync end to end. Instances are single-use.

    Delays and batch sizes default to settings; tests pass zero delays.
    """

    def __init__(
        self,
        connector: HubSpotTicketConnector,
        store: TicketStore,
        *,
        resolver: Optional[ReferenceDataResolver] = None,
        transformer: Optional[TicketTransformer] = None,
        log_store: Optional[SyncLogStore] = None,
        on_progress: Optional[ProgressCallback] = None,
        process_batch_size: Optional[int] = None,
        process_batch_delay: Optional[float] = None,
        save_batch_size: Optional[int] = None,
        save_batch_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.connector = connector
        self.store = store
        self.resolver = resolver or ReferenceDataResolver(connector)
        self.transformer = transformer or TicketTransformer()
        self.log_store = log_store
        self.on_progress = on_progress
        self.process_batch_size: int = process_batch_size or settings.SYNC_PROCESS_BATCH_SIZE
        self.process_batch_delay: float = (
            process_batch_delay if process_batch_delay is not None else settings.SYNC_PROCESS_BATCH_DELAY_SECONDS
        )
        self.save_batch_size: int = save_batch_size or settings.SYNC_SAVE_BATCH_SIZE
        self.save_batch_delay: float = (
            save_batch_delay if save_batch_delay is not None else settings.SYNC_SAVE_BATCH_DELAY_SECONDS
        )
        self._sleep = sleep
        self._now = now
        self.run_state: Optional[SyncRun] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, request: SyncRequest) -> SyncResult:
        if self.run_state is not None:
            raise RuntimeError("SyncOrchestrator is single-use; create a new one per run")

        now = self._now()
        run = SyncRun(trigger=request.trigger, started_at=_naive_utc(now))
        self.run_state = run

        try:
            search_filter = request.to_search_filter(now=now)
        except InvalidSyncTriggerError as exc:
            self._fail(run, str(exc))
            logger.warning("[Sync] Rejected sync request: %s", exc)
            return self._result(run, message=str(exc), error_type="invalid_trigger")

        run.range_start = _naive_utc(search_filter.created_after)
        run.range_end = _naive_utc(search_filter.created_before)
        self._log(run, f"Starting {request.trigger} sync")
        logger.info(
            "[Sync] Starting sync",
            extra={"trigger": request.trigger, "range_start": str(run.range_start), "range_end": str(run.range_end)},
        )

        try:
            message = await self._execute(run, search_filter)
        except SyncFetchError as exc:
            self._fail(run, str(exc))
            return await self._finish(run, message="Sync failed while fetching tickets", error_type="fetch")
        except SyncAbortedError as exc:
            self._fail(run, str(exc))
            return await self._finish(run, message="Sync aborted", error_type="aborted")
        except Exception as exc:
            logger.exception("[Sync] Unexpected error during %s sync", request.trigger)
            self._fail(run, f"Unexpected error: {exc}")
            return await self._finish(run, message="Sync failed", error_type="internal")

        run.state = SyncState.DONE
        return await self._finish(run, message=message)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _execute(self, run: SyncRun, search_filter: TicketSearchFilter) -> str:
        raw_tickets = await self._fetch(run, search_filter)
        if not raw_tickets:
            self._progress(run, 100, "No tickets found, nothing to sync")
            return "No tickets to sync"

        normalized = await self._process(run, raw_tickets)
        await self._save(run, normalized)

        counts = run.counts
        self._progress(run, 100, f"Sync complete: {counts.saved}/{counts.fetched} tickets saved")
        return f"Synced {counts.saved} of {counts.fetched} tickets"

    async def _fetch(self, run: SyncRun, search_filter: TicketSearchFilter) -> list[RemoteTicket]:
        run.state = SyncState.FETCHING
        self._progress(run, 0, "Fetching tickets from HubSpot")

        def on_page(fetched: int, estimated_total: int, message: str) -> None:
            fraction = fetched / estimated_total if estimated_total else 1.0
            self._progress(run, int(FETCH_WEIGHT * fraction), message)

        try:
            raw_tickets = await self.connector.fetch_all_tickets(search_filter, on_progress=on_page)
        except HubSpotApiError as exc:
            raise SyncFetchError(f"Failed to fetch tickets: {exc}") from exc

        run.counts.fetched = len(raw_tickets)
        self._progress(run, FETCH_WEIGHT, f"Fetched {len(raw_tickets)} tickets")
        return raw_tickets

    async def _process(self, run: SyncRun, raw_tickets: list[RemoteTicket]) -> list[NormalizedTicket]:
        run.state = SyncState.PROCESSING
        refs: ReferenceMaps = await self.resolver.resolve_all()
        self._log(
            run,
            f"Loaded labels: {len(refs.owners)} owners, {len(refs.pipeline_stages)} stages, "
            f"{len(refs.categories)} categories, {len(refs.support_objects)} support objects",
        )

        total = len(raw_tickets)
        synced_at = self._now()
        normalized: list[NormalizedTicket] = []
        attempted = 0

        batches = chunks(raw_tickets, self.process_batch_size)
        for index, batch in enumerate(batches):
            results = await asyncio.gather(*(self._transform_one(run, raw, refs, synced_at) for raw in batch))
            normalized.extend(ticket for ticket in results if ticket is not None)
            attempted += len(batch)
            run.counts.processed = len(normalized)
            self._progress(
                run,
                FETCH_WEIGHT + int(PROCESS_WEIGHT * attempted / total),
                f"Processed {attempted}/{total} tickets",
            )
            if index < len(batches) - 1 and self.process_batch_delay > 0:
                await self._sleep(self.process_batch_delay)

        if not normalized:
            raise SyncAbortedError(f"All {total} tickets failed to process")
        return normalized

    async def _transform_one(
        self,
        run: SyncRun,
        raw: RemoteTicket,
        refs: ReferenceMaps,
        synced_at: datetime,
    ) -> Optional[NormalizedTicket]:
        try:
            return self.transformer.transform(raw, refs, synced_at=synced_at)
        except Exception as exc:
            run.counts.failed += 1
            self._log(run, f"Failed to process ticket {raw.id or '<no id>'}: {exc}")
            logger.warning("[Sync] Failed to process ticket", extra={"ticket_id": raw.id, "error": str(exc)})
            return None

    async def _save(self, run: SyncRun, tickets: list[NormalizedTicket]) -> None:
        run.state = SyncState.SAVING
        total = len(tickets)
        attempted = 0

        batches = chunks(tickets, self.save_batch_size)
        for index, batch in enumerate(batches):
            for ticket in batch:
                try:
                    await self.store.upsert(ticket)
                    run.counts.saved += 1
                except Exception as exc:
                    run.counts.failed += 1
                    self._log(run, f"Failed to save ticket {ticket.external_id}: {exc}")
                    logger.warning(
                        "[Sync] Failed to save ticket",
                        extra={"ticket_id": ticket.external_id, "error": str(exc)},
                    )
                attempted += 1
            self._progress(
                run,
                FETCH_WEIGHT + PROCESS_WEIGHT + int(SAVE_WEIGHT * attempted / total),
                f"Saved {run.counts.saved}/{total} tickets",
            )
            if index < len(batches) - 1 and self.save_batch_delay > 0:
                await self._sleep(self.save_batch_delay)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _log(self, run: SyncRun, message: str) -> None:
        run.log.append(message)

    def _progress(self, run: SyncRun, percent: int, message: str) -> None:
        percent = max(run.progress, min(100, max(0, percent)))
        run.progress = percent
        self._log(run, f"[{percent}%] {message}")
        if self.on_progress is not None:
            self.on_progress(percent, message)

    def _fail(self, run: SyncRun, error: str) -> None:
        run.state = SyncState.FAILED
        run.error = error
        self._log(run, f"Error: {error}")

    async def _finish(self, run: SyncRun, message: str, error_type: Optional[str] = None) -> SyncResult:
        run.completed_at = _naive_utc(self._now())
        sync_log_id: Optional[str] = None
        if self.log_store is not None:
            try:
                sync_log_id = await self.log_store.record(run)
            except Exception:
                logger.exception("[Sync] Failed to record sync log for %s run", run.trigger)

        logger.info(
            "[Sync] Sync finished",
            extra={"trigger": run.trigger, "state": run.state.value, **run.counts.as_dict()},
        )
        return self._result(run, message=message, error_type=error_type, sync_log_id=sync_log_id)

    def _result(
        self,
        run: SyncRun,
        message: str,
        error_type: Optional[str] = None,
        sync_log_id: Optional[str] = None,
    ) -> SyncResult:
        return SyncResult(
            success=run.succeeded,
            message=message,
            state=run.state,
            counts=run.counts.as_dict(),
            log=list(run.log),
            error=run.error,
            error_type=error_type,
            sync_log_id=sync_log_id,
        )

"""
Ticket normalization: RemoteTicket + ReferenceMaps -> NormalizedTicket.

Pure and synchronous. Missing lookups never fail a ticket, they fall back:
- owner id mapped         -> owner label
- owner id unmapped       -> ``OWNER_UNKNOWN``
- no owner id             -> ``OWNER_NONE``
- stage / support object  -> mapped label, else the raw code
- category codes          -> mapped label, else the code itself
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ticketsync.config import settings, to_iso8601
from ticketsync.connectors.models import CategoryValue, NormalizedTicket, ReferenceMaps, RemoteTicket

OWNER_UNKNOWN = "Unknown"
OWNER_NONE = "No owner"


class TicketTransformError(ValueError):
    """A raw ticket cannot be normalized (it has no id)."""


def split_category(raw: str) -> list[str]:
    """``"A; B;;"`` -> ``["A", "B"]``. Duplicates are kept."""
    return [code.strip() for code in raw.split(";") if code.strip()]


def parse_created_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a HubSpot creation date into a naive UTC datetime.

    Digit strings are epoch milliseconds, anything else is tried as ISO-8601.
    Returns ``None`` when the value is empty or unparseable.
    """
    if not value:
        return None
    text = value.strip()
    try:
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class TicketTransformer:
    """Maps raw HubSpot tickets into the storage shape."""

    def __init__(self, content_max_chars: Optional[int] = None) -> None:
        self.content_max_chars: int = (
            content_max_chars if content_max_chars is not None else settings.TICKET_CONTENT_MAX_CHARS
        )

    def transform(
        self,
        raw: RemoteTicket,
        refs: ReferenceMaps,
        synced_at: Optional[datetime] = None,
    ) -> NormalizedTicket:
        if not raw.id:
            raise TicketTransformError("ticket has no id")

        codes = split_category(raw.prop("hs_ticket_category"))
        category = CategoryValue.from_pairs(codes, [refs.categories.get(code, code) for code in codes])

        owner_id = raw.prop("hubspot_owner_id").strip()
        if not owner_id:
            owner_name = OWNER_NONE
        else:
            owner_name = refs.owners.get(owner_id, OWNER_UNKNOWN)

        stage = raw.prop("hs_pipeline_stage")
        support_object = raw.prop("support_object")

        return NormalizedTicket(
            external_id=raw.id,
            ticket_number=raw.prop("hs_ticket_id") or raw.id,
            owner_id=owner_id,
            owner_name=owner_name,
            category=category,
            pipeline_stage=stage,
            pipeline_stage_label=refs.pipeline_stages.get(stage, stage) if stage else "",
            subject=raw.prop("subject"),
            content=raw.prop("content")[: self.content_max_chars],
            company_name=raw.prop("hs_primary_company_name"),
            source_type=raw.prop("source_type"),
            support_object=support_object,
            support_object_label=refs.support_objects.get(support_object, support_object) if support_object else "",
            created_date=raw.prop("createdate") or raw.created_at,
            synced_at=to_iso8601(synced_at or datetime.now(timezone.utc)),
        )

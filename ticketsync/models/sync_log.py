"""
SyncLog model - one row per ticket sync run.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ticketsync.config import to_iso8601
from ticketsync.models.database import Base
from ticketsync.models.ticket import JSONVariant


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncLog(Base):
    """Outcome and log lines of a finished sync run."""

    __tablename__ = "sync_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False)
    range_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    range_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # success | failed
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    total_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_saved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    logs: Mapped[list[str]] = mapped_column(JSONVariant, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_sync_logs_created_at", "created_at"),
        Index("ix_sync_logs_sync_type_status", "sync_type", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "range_start": to_iso8601(self.range_start),
            "range_end": to_iso8601(self.range_end),
            "status": self.status,
            "total_fetched": self.total_fetched,
            "total_processed": self.total_processed,
            "total_saved": self.total_saved,
            "total_failed": self.total_failed,
            "logs": list(self.logs or []),
            "error_message": self.error_message,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "created_at": to_iso8601(self.created_at),
        }

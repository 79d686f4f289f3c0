"""
Ticket model - normalized HubSpot support tickets keyed by HubSpot id.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ticketsync.config import to_iso8601
from ticketsync.models.database import Base

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Ticket(Base):
    """Support ticket synced from HubSpot."""

    __tablename__ = "tickets"

    external_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Multi-valued category: structured value plus flattened columns for filtering
    category: Mapped[dict[str, Any]] = mapped_column(JSONVariant, nullable=False)
    category_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category_label: Mapped[str] = mapped_column(Text, nullable=False, default="")

    pipeline_stage: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    pipeline_stage_label: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    company_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    source_type: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    support_object: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    support_object_label: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Verbatim HubSpot value for display; created_at is the parsed form
    created_date: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_tickets_created_at", "created_at"),
        Index("ix_tickets_company_name", "company_name"),
        Index("ix_tickets_owner_name", "owner_name"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "external_id": self.external_id,
            "ticket_number": self.ticket_number,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "category": self.category,
            "category_value": self.category_value,
            "category_label": self.category_label,
            "pipeline_stage": self.pipeline_stage,
            "pipeline_stage_label": self.pipeline_stage_label,
            "subject": self.subject,
            "content": self.content,
            "company_name": self.company_name,
            "source_type": self.source_type,
            "support_object": self.support_object,
            "support_object_label": self.support_object_label,
            "created_date": self.created_date,
            "created_at": to_iso8601(self.created_at),
            "synced_at": self.synced_at,
        }

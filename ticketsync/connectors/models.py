"""
Record models for the ticket sync pipeline.

``RemoteTicket`` is the raw HubSpot shape, reduced at the ingestion boundary
to plain string properties. ``NormalizedTicket`` is what the storage layer
persists. ``ReferenceMaps`` holds the code -> label lookups for one run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Union

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Property values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BareProperty:
    """Property delivered as a plain value: ``"subject": "Printer down"``."""

    text: str


@dataclass(frozen=True)
class WrappedProperty:
    """Property delivered as an object: ``"subject": {"value": "Printer down"}``."""

    text: str


PropertyValue = Union[BareProperty, WrappedProperty]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_property(raw: Any) -> PropertyValue:
    """Classify a raw property value by shape. Missing or null becomes ``""``."""
    if isinstance(raw, dict):
        return WrappedProperty(_as_text(raw.get("value")))
    return BareProperty(_as_text(raw))


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class RemoteTicket(BaseModel):
    """A ticket as returned by the HubSpot search or object API."""

    id: str
    created_at: str = ""
    properties: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "RemoteTicket":
        raw_props: dict[str, Any] = payload.get("properties") or {}
        return cls(
            id=_as_text(payload.get("id")),
            created_at=_as_text(payload.get("createdAt")),
            properties={name: parse_property(value).text for name, value in raw_props.items()},
        )

    def prop(self, name: str) -> str:
        return self.properties.get(name, "")


class CategoryValue(BaseModel):
    """Multi-valued category: codes and their labels, position-aligned."""

    count: int = 0
    ids: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> "CategoryValue":
        if not (self.count == len(self.ids) == len(self.labels)):
            raise ValueError(
                f"category count {self.count} does not match ids ({len(self.ids)}) "
                f"and labels ({len(self.labels)})"
            )
        return self

    @classmethod
    def from_pairs(cls, ids: list[str], labels: list[str]) -> "CategoryValue":
        return cls(count=len(ids), ids=list(ids), labels=list(labels))


class NormalizedTicket(BaseModel):
    """A ticket with every code resolved to a display label."""

    external_id: str
    ticket_number: str
    owner_id: str = ""
    owner_name: str = ""
    category: CategoryValue = Field(default_factory=CategoryValue)
    pipeline_stage: str = ""
    pipeline_stage_label: str = ""
    subject: str = ""
    content: str = ""
    company_name: str = ""
    source_type: str = ""
    support_object: str = ""
    support_object_label: str = ""
    created_date: str = ""
    synced_at: str


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


def _frozen(mapping: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class ReferenceMaps:
    """Read-only code -> label maps, built once per sync run."""

    owners: Mapping[str, str] = field(default_factory=dict)
    pipeline_stages: Mapping[str, str] = field(default_factory=dict)
    categories: Mapping[str, str] = field(default_factory=dict)
    support_objects: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("owners", "pipeline_stages", "categories", "support_objects"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

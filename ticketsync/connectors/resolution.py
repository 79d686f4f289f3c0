"""
Reference data resolution: HubSpot codes -> human-readable labels.

Builds the lookup tables a sync run needs to label tickets:
  1. Owners            -> /crm/v3/owners (``"First Last"`` or email)
  2. Pipeline stages   -> /crm/v3/pipelines/tickets, all pipelines flattened
  3. Category options  -> property ``hs_ticket_category``
  4. Support objects   -> property ``support_object``

Lookups run concurrently. A failed lookup yields an empty map and a warning;
the transformer then falls back to raw codes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Mapping, Optional

from ticketsync.connectors.base import Err
from ticketsync.connectors.hubspot import HubSpotTicketConnector
from ticketsync.connectors.models import ReferenceMaps

logger = logging.getLogger(__name__)

CATEGORY_PROPERTY = "hs_ticket_category"
SUPPORT_OBJECT_PROPERTY = "support_object"


class PipelineStageCache:
    """Holds the pipeline stage map between runs.

    Pipeline definitions rarely change, so the map is fetched once and reused.
    ``ttl_seconds=None`` keeps it until :meth:`clear` or process exit.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._stages: Optional[dict[str, str]] = None
        self._stored_at: float = 0.0

    def get(self) -> Optional[dict[str, str]]:
        if self._stages is None:
            return None
        if self.ttl_seconds is not None and self._clock() - self._stored_at >= self.ttl_seconds:
            self._stages = None
            return None
        return self._stages

    def set(self, stages: Mapping[str, str]) -> None:
        self._stages = dict(stages)
        self._stored_at = self._clock()

    def clear(self) -> None:
        self._stages = None


class ReferenceDataResolver:
    """Fetches the label maps for one sync run.

    Build once per run, then call :meth:`resolve_all`.
    """

    def __init__(
        self,
        connector: HubSpotTicketConnector,
        stage_cache: Optional[PipelineStageCache] = None,
    ) -> None:
        self._connector = connector
        self._stage_cache = stage_cache if stage_cache is not None else PipelineStageCache()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_owner_labels(self) -> dict[str, str]:
        result = await self._connector.fetch_owners()
        if isinstance(result, Err):
            logger.warning("[HubSpot] Owner lookup failed, owners will be unlabeled: %s", result.error)
            return {}

        labels: dict[str, str] = {}
        for owner in result.value:
            owner_id: str = owner.get("id") or ""
            full_name = f"{owner.get('firstName') or ''} {owner.get('lastName') or ''}".strip()
            label = full_name or (owner.get("email") or "").strip()
            if owner_id and label:
                labels[owner_id] = label
        logger.info("[HubSpot] Loaded %d owner labels", len(labels))
        return labels

    async def fetch_pipeline_stage_labels(self) -> dict[str, str]:
        cached = self._stage_cache.get()
        if cached is not None:
            return cached

        result = await self._connector.get_pipelines()
        if isinstance(result, Err):
            logger.warning("[HubSpot] Pipeline lookup failed, stages will be unlabeled: %s", result.error)
            return {}

        labels: dict[str, str] = {}
        for pipeline in result.value:
            for stage in pipeline.get("stages", []):
                stage_id = str(stage.get("id", ""))
                if stage_id:
                    labels[stage_id] = stage.get("label") or stage_id
        self._stage_cache.set(labels)
        logger.info("[HubSpot] Loaded %d pipeline stage labels", len(labels))
        return labels

    async def fetch_property_option_labels(self, property_name: str) -> dict[str, str]:
        result = await self._connector.get_property_options(property_name)
        if isinstance(result, Err):
            logger.warning(
                "[HubSpot] Option lookup for %s failed, values will be unlabeled: %s",
                property_name, result.error,
            )
            return {}

        labels: dict[str, str] = {}
        for option in result.value:
            value = str(option.get("value", ""))
            if value:
                labels[value] = option.get("label") or value
        return labels

    async def resolve_all(self) -> ReferenceMaps:
        """Run all four lookups concurrently."""
        owners, stages, categories, support_objects = await asyncio.gather(
            self.fetch_owner_labels(),
            self.fetch_pipeline_stage_labels(),
            self.fetch_property_option_labels(CATEGORY_PROPERTY),
            self.fetch_property_option_labels(SUPPORT_OBJECT_PROPERTY),
        )
        return ReferenceMaps(
            owners=owners,
            pipeline_stages=stages,
            categories=categories,
            support_objects=support_objects,
        )

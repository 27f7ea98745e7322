"""Metric/event definition registry (read side)."""
from __future__ import annotations

from asyncpg import Pool  # type: ignore[import-untyped]

from telemetry_aggregator.domain.enums import DefinitionKind
from telemetry_aggregator.repositories.base import BaseRepository

_LOOKUP_QUERIES = {
    DefinitionKind.METRIC: "SELECT id FROM metric_definitions WHERE name = $1",
    DefinitionKind.EVENT: "SELECT id FROM event_definitions WHERE type = $1",
}


class DefinitionRepository(BaseRepository):
    """Resolves definition names to ids. Creating definitions is not our job."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    async def get_definition_id(self, kind: DefinitionKind, name: str) -> int | None:
        record = await self._fetchrow(_LOOKUP_QUERIES[kind], name)
        if record is None:
            return None
        return int(record["id"])

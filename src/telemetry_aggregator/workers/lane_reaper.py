"""Close lanes of sessions that reached a terminal status outside this process."""
from __future__ import annotations

from datetime import datetime

from telemetry_aggregator.ingestion.scheduler import IngestionScheduler
from telemetry_aggregator.worker import TaskFn


def make_lane_reaper(scheduler: IngestionScheduler) -> TaskFn:
    async def reap_lanes(now: datetime) -> str | None:
        closed = await scheduler.reap()
        return f"closed={closed}" if closed else None

    return reap_lanes

"""Re-queue pending batches that no lane is holding (e.g. after a lane crash)."""
from __future__ import annotations

from datetime import datetime

from telemetry_aggregator.ingestion.scheduler import IngestionScheduler
from telemetry_aggregator.worker import TaskFn


def make_pending_recovery(scheduler: IngestionScheduler, *, min_age_seconds: float) -> TaskFn:
    async def recover_pending(now: datetime) -> str | None:
        queued = await scheduler.recover(min_age_seconds=min_age_seconds)
        return f"requeued={queued}" if queued else None

    return recover_pending

"""Periodic maintenance tasks for :class:`~telemetry_aggregator.worker.BackgroundWorker`."""
from telemetry_aggregator.workers.lane_reaper import make_lane_reaper
from telemetry_aggregator.workers.pending_recovery import make_pending_recovery

__all__ = ["make_lane_reaper", "make_pending_recovery"]

"""Pluggable window statistics and event detectors used by the evaluator."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Protocol, Sequence

import numpy as np

from telemetry_aggregator.domain.dto import Sample

Statistic = Callable[[np.ndarray], float]

WINDOW_STATISTICS: dict[str, Statistic] = {
    "mean": lambda values: float(np.mean(values)),
    "std_dev": lambda values: float(np.std(values)),
    "min": lambda values: float(np.min(values)),
    "max": lambda values: float(np.max(values)),
    "p95": lambda values: float(np.percentile(values, 95)),
}

THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"


@dataclass(frozen=True, slots=True)
class EventCandidate:
    """An event awaiting definition resolution."""

    event_type: str
    timestamp: datetime
    value: float | None = None
    details: dict[str, Any] = field(default_factory=dict)


class EventDetector(Protocol):
    def detect(
        self,
        sample: Sample,
        window: Sequence[float],
        timestamp: datetime,
    ) -> list[EventCandidate]: ...


@dataclass(frozen=True, slots=True)
class ThresholdDetector:
    """Emits an event whenever a field leaves its ``[minimum, maximum]`` band."""

    field: str
    minimum: float | None = None
    maximum: float | None = None
    event_type: str = THRESHOLD_EXCEEDED

    def detect(
        self,
        sample: Sample,
        window: Sequence[float],
        timestamp: datetime,
    ) -> list[EventCandidate]:
        if sample.field != self.field:
            return []
        bound: str | None = None
        threshold: float | None = None
        if self.maximum is not None and sample.value > self.maximum:
            bound, threshold = "max", self.maximum
        elif self.minimum is not None and sample.value < self.minimum:
            bound, threshold = "min", self.minimum
        if bound is None:
            return []
        details: dict[str, Any] = {
            "field": sample.field,
            "bound": bound,
            "threshold": threshold,
            "window_mean": float(np.mean(window)) if len(window) else sample.value,
        }
        if sample.channel is not None:
            details["channel"] = sample.channel
        return [
            EventCandidate(
                event_type=self.event_type,
                timestamp=timestamp,
                value=sample.value,
                details=details,
            )
        ]


def build_threshold_detectors(
    thresholds: Mapping[str, Mapping[str, float]],
) -> list[ThresholdDetector]:
    """``{"voltage": {"min": 0.0, "max": 5.0}}`` -> one detector per field."""
    return [
        ThresholdDetector(field=name, minimum=bounds.get("min"), maximum=bounds.get("max"))
        for name, bounds in thresholds.items()
    ]

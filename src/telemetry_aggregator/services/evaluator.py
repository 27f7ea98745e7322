"""Batch evaluator: raw payload + session context -> derived rows.

Evaluation has no storage side effects. The per-session window is only read
here; the caller advances it with ``EvaluationResult.samples`` once the batch
has been committed, so retrying a batch evaluates it against the same history.
"""
from __future__ import annotations

import json
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

import numpy as np
import structlog

from telemetry_aggregator.core.exceptions import PayloadUnparseableError, UnknownDefinitionError
from telemetry_aggregator.domain.dto import (
    ArrayResultDTO,
    BatchWarning,
    DetectedEventDTO,
    EvaluationResult,
    MetricValueDTO,
    Sample,
)
from telemetry_aggregator.domain.enums import DefinitionKind, WarningCode
from telemetry_aggregator.domain.models import RawStreamBatch, TestSession
from telemetry_aggregator.services.lookup_cache import DefinitionCache
from telemetry_aggregator.services.rules import WINDOW_STATISTICS, EventCandidate, EventDetector

logger = structlog.get_logger(__name__)

RESERVED_KEYS = frozenset({"timestamp", "channel", "readings", "events", "arrays"})
MAX_ARRAY_NAME_LENGTH = 100

WindowKey = tuple[str, str | None]


class SessionWindow:
    """Recent numeric history of one session, keyed by (field, channel).

    Owned by the single lane processing the session; not shared.
    """

    def __init__(self, session_id: int, size: int):
        self.session_id = session_id
        self.size = size
        self.consecutive_errors = 0
        self._series: dict[WindowKey, deque[float]] = {}

    def values(self, key: WindowKey) -> list[float]:
        return list(self._series.get(key, ()))

    def project(self, samples: Iterable[Sample]) -> dict[WindowKey, list[float]]:
        """Windows as they would look after ``samples``, without mutating state."""
        projected: dict[WindowKey, deque[float]] = {}
        for sample in samples:
            key = (sample.field, sample.channel)
            if key not in projected:
                projected[key] = deque(self._series.get(key, ()), maxlen=self.size)
            projected[key].append(sample.value)
        return {key: list(values) for key, values in projected.items()}

    def advance(self, samples: Iterable[Sample]) -> None:
        for sample in samples:
            key = (sample.field, sample.channel)
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = deque(maxlen=self.size)
            series.append(sample.value)

    def keys(self) -> list[WindowKey]:
        return list(self._series)


@dataclass
class ParsedPayload:
    timestamp: datetime | None
    channel: str | None
    readings: dict[str, Any]
    events: list[Any]
    arrays: list[Any]
    warnings: list[BatchWarning] = field(default_factory=list)


def _warning(code: WarningCode, subject: str, message: str) -> BatchWarning:
    return BatchWarning(code=code, subject=subject, message=message)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_payload(raw: Any) -> ParsedPayload:
    """Check the payload's structure. Bad structure fails the whole batch."""
    document = raw
    if isinstance(document, (bytes, bytearray)):
        document = document.decode("utf-8", errors="replace")
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise PayloadUnparseableError(f"Payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(document, dict):
        raise PayloadUnparseableError(
            f"Payload must be a JSON object, got {type(document).__name__}"
        )

    if "readings" in document:
        readings = document["readings"]
        if not isinstance(readings, dict):
            raise PayloadUnparseableError("'readings' must be an object")
    else:
        readings = {k: v for k, v in document.items() if k not in RESERVED_KEYS}

    events = document.get("events", [])
    if not isinstance(events, list):
        raise PayloadUnparseableError("'events' must be a list")
    arrays = document.get("arrays", [])
    if not isinstance(arrays, list):
        raise PayloadUnparseableError("'arrays' must be a list")

    warnings: list[BatchWarning] = []
    timestamp = None
    if "timestamp" in document:
        timestamp = _parse_timestamp(document["timestamp"])
        if timestamp is None:
            warnings.append(
                _warning(WarningCode.SKIPPED_FIELD, "timestamp", "Not an ISO-8601 timestamp")
            )

    channel = document.get("channel")
    if isinstance(channel, int) and not isinstance(channel, bool):
        channel = str(channel)
    elif channel is not None and not isinstance(channel, str):
        warnings.append(
            _warning(WarningCode.SKIPPED_FIELD, "channel", "Channel must be a string")
        )
        channel = None

    return ParsedPayload(
        timestamp=timestamp,
        channel=channel,
        readings=readings,
        events=events,
        arrays=arrays,
        warnings=warnings,
    )


def extract_samples(parsed: ParsedPayload) -> tuple[list[Sample], list[BatchWarning]]:
    samples: list[Sample] = []
    warnings: list[BatchWarning] = []
    for name, value in parsed.readings.items():
        if _is_number(value):
            samples.append(Sample(field=name, channel=parsed.channel, value=float(value)))
        else:
            warnings.append(
                _warning(
                    WarningCode.SKIPPED_FIELD,
                    name,
                    f"Reading is not a finite number: {value!r}"[:200],
                )
            )
    return samples, warnings


class BatchEvaluator:
    """Turns one raw batch into metrics, events and array results."""

    def __init__(
        self,
        cache: DefinitionCache,
        *,
        statistics: Sequence[str] = ("mean", "std_dev", "min", "max", "p95"),
        detectors: Sequence[EventDetector] = (),
        window_size: int = 50,
    ):
        unknown = [name for name in statistics if name not in WINDOW_STATISTICS]
        if unknown:
            raise ValueError(f"Unsupported window statistics: {unknown}")
        self._cache = cache
        self._statistics = list(statistics)
        self._detectors = list(detectors)
        self.window_size = window_size

    def new_window(self, session_id: int) -> SessionWindow:
        return SessionWindow(session_id, self.window_size)

    def samples_of(self, raw_payload: Any) -> list[Sample]:
        """Numeric samples of an already-processed payload (window warm-up)."""
        samples, _ = extract_samples(parse_payload(raw_payload))
        return samples

    async def evaluate(
        self,
        session: TestSession,
        batch: RawStreamBatch,
        window: SessionWindow,
    ) -> EvaluationResult:
        parsed = parse_payload(batch.raw_payload)
        samples, sample_warnings = extract_samples(parsed)
        result = EvaluationResult(
            batch_id=batch.id,
            session_id=session.id,
            samples=samples,
            warnings=[*parsed.warnings, *sample_warnings],
        )
        projected = window.project(samples)
        default_timestamp = parsed.timestamp or batch.received_at

        await self._evaluate_metrics(result, projected, batch)

        candidates: list[EventCandidate] = []
        for sample in samples:
            series = projected[(sample.field, sample.channel)]
            for detector in self._detectors:
                candidates.extend(detector.detect(sample, series, default_timestamp))
        candidates.extend(self._declared_events(parsed.events, default_timestamp, result))
        await self._resolve_events(result, candidates)

        result.arrays = self._arrays(parsed.arrays, result)

        if result.warnings:
            logger.info(
                "batch evaluated with warnings",
                session_id=session.id,
                batch_id=batch.id,
                warnings=len(result.warnings),
            )
        return result

    async def _evaluate_metrics(
        self,
        result: EvaluationResult,
        projected: dict[WindowKey, list[float]],
        batch: RawStreamBatch,
    ) -> None:
        unresolved: set[str] = set()
        for (field_name, channel), values in projected.items():
            series = np.asarray(values, dtype=float)
            context: dict[str, Any] = {
                "field": field_name,
                "window_size": self.window_size,
                "samples": len(values),
                "through_batch_id": batch.id,
            }
            if channel is not None:
                context["channel"] = channel
            for statistic in self._statistics:
                if statistic in unresolved:
                    continue
                try:
                    definition_id = await self._cache.resolve(DefinitionKind.METRIC, statistic)
                except UnknownDefinitionError as exc:
                    unresolved.add(statistic)
                    result.warnings.append(
                        _warning(WarningCode.UNRESOLVABLE_DEFINITION, statistic, str(exc))
                    )
                    continue
                result.metrics.append(
                    MetricValueDTO(
                        metric_definition_id=definition_id,
                        metric_name=statistic,
                        value=WINDOW_STATISTICS[statistic](series),
                        context=context,
                    )
                )

    def _declared_events(
        self,
        entries: list[Any],
        default_timestamp: datetime,
        result: EvaluationResult,
    ) -> list[EventCandidate]:
        """Events reported by the instrument itself."""
        candidates: list[EventCandidate] = []
        for index, entry in enumerate(entries):
            subject = f"events[{index}]"
            event_type = entry.get("type") if isinstance(entry, dict) else None
            if not isinstance(event_type, str) or not event_type:
                result.warnings.append(
                    _warning(WarningCode.INVALID_EVENT, subject, "Event needs a non-empty 'type'")
                )
                continue
            value = entry.get("value")
            if value is not None and not _is_number(value):
                result.warnings.append(
                    _warning(WarningCode.INVALID_EVENT, subject, "Event 'value' must be a number")
                )
                continue
            details = entry.get("details") or {}
            if not isinstance(details, dict):
                result.warnings.append(
                    _warning(WarningCode.INVALID_EVENT, subject, "'details' must be an object")
                )
                continue
            timestamp = default_timestamp
            if "timestamp" in entry:
                timestamp = _parse_timestamp(entry["timestamp"]) or default_timestamp
            candidates.append(
                EventCandidate(
                    event_type=event_type,
                    timestamp=timestamp,
                    value=float(value) if value is not None else None,
                    details=details,
                )
            )
        return candidates

    async def _resolve_events(
        self, result: EvaluationResult, candidates: list[EventCandidate]
    ) -> None:
        for candidate in candidates:
            try:
                definition_id = await self._cache.resolve(
                    DefinitionKind.EVENT, candidate.event_type
                )
            except UnknownDefinitionError as exc:
                result.warnings.append(
                    _warning(WarningCode.UNRESOLVABLE_DEFINITION, candidate.event_type, str(exc))
                )
                continue
            result.events.append(
                DetectedEventDTO(
                    event_definition_id=definition_id,
                    event_type=candidate.event_type,
                    timestamp=candidate.timestamp,
                    value=candidate.value,
                    details=candidate.details,
                )
            )

    @staticmethod
    def _arrays(entries: list[Any], result: EvaluationResult) -> list[ArrayResultDTO]:
        arrays: list[ArrayResultDTO] = []
        seen: set[str] = set()
        for index, entry in enumerate(entries):
            subject = f"arrays[{index}]"
            name = entry.get("name") if isinstance(entry, dict) else None
            if not isinstance(name, str) or not name or len(name) > MAX_ARRAY_NAME_LENGTH:
                result.warnings.append(
                    _warning(
                        WarningCode.INVALID_ARRAY, subject, "Array needs a name of 1-100 characters"
                    )
                )
                continue
            try:
                data = np.asarray(entry.get("data"), dtype=float)
            except (TypeError, ValueError):
                result.warnings.append(
                    _warning(
                        WarningCode.INVALID_ARRAY, name, "Not a rectangular numeric array"
                    )
                )
                continue
            if data.ndim == 0 or data.size == 0 or not np.isfinite(data).all():
                result.warnings.append(
                    _warning(
                        WarningCode.INVALID_ARRAY, name, "Array data must be non-empty and finite"
                    )
                )
                continue
            if name in seen:
                result.warnings.append(
                    _warning(
                        WarningCode.DUPLICATE_ARRAY_NAME, name, "Name repeated within the batch"
                    )
                )
                continue
            seen.add(name)
            arrays.append(ArrayResultDTO(name=name, data=data.tolist()))
        return arrays

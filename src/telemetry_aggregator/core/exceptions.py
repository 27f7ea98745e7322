"""Common exceptions for domain, repository and pipeline layers."""
from __future__ import annotations


class TelemetryAggregatorError(Exception):
    """Base error for the aggregation pipeline."""


class RepositoryError(TelemetryAggregatorError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class UnknownSessionError(NotFoundError):
    """Raised when a batch references a session that does not exist."""


class SessionClosedError(TelemetryAggregatorError):
    """Raised when data arrives for a session in a terminal status."""


class InvalidStatusTransitionError(TelemetryAggregatorError):
    """Raised when an entity attempts an unsupported status change."""


class UnknownDefinitionError(TelemetryAggregatorError):
    """Raised when a metric/event name has no definition in the registry."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"Unknown {kind} definition: {name}")
        self.kind = kind
        self.name = name


class PayloadUnparseableError(TelemetryAggregatorError):
    """Raised when a raw payload is structurally malformed."""


class TransientStoreError(TelemetryAggregatorError):
    """Raised when a backing store is temporarily unavailable."""


class BatchNotReprocessableError(TelemetryAggregatorError):
    """Raised when reprocessing is requested for a batch not in ``error``."""


class MalformedStreamItemError(TelemetryAggregatorError):
    """Raised when a stream record lacks a usable session id or payload."""

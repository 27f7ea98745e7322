"""Telemetry ingestion and aggregation pipeline for test-equipment sessions."""

__version__ = "0.1.0"

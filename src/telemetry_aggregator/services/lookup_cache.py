"""Read-through cache of metric/event definition ids."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog

from telemetry_aggregator.core.exceptions import TransientStoreError, UnknownDefinitionError
from telemetry_aggregator.domain.enums import DefinitionKind
from telemetry_aggregator.repositories.base import TRANSIENT_DB_ERRORS

logger = structlog.get_logger(__name__)

NOTIFY_CHANNEL = "definition_changes"


class DefinitionRegistry(Protocol):
    async def get_definition_id(self, kind: DefinitionKind, name: str) -> int | None: ...


@dataclass(frozen=True, slots=True)
class _Entry:
    definition_id: int
    expires_at: float


class DefinitionCache:
    """Maps ``(kind, name)`` to a stable definition id.

    Misses fall through to the registry and are never cached, so a definition
    created later becomes visible on the next lookup. Hits are served until
    ``ttl_seconds`` elapse or the registry announces a change.
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[DefinitionKind, str], _Entry] = {}

    async def resolve(self, kind: DefinitionKind, name: str) -> int:
        key = (kind, name)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            return entry.definition_id

        try:
            definition_id = await self._registry.get_definition_id(kind, name)
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Definition registry unavailable: {exc}") from exc
        if definition_id is None:
            self._entries.pop(key, None)
            raise UnknownDefinitionError(kind.value, name)

        self._entries[key] = _Entry(definition_id=definition_id, expires_at=now + self._ttl)
        return definition_id

    def invalidate(self, kind: DefinitionKind | None = None, name: str | None = None) -> int:
        """Drop cached entries; no arguments clears everything. Returns count dropped."""
        if kind is None:
            dropped = len(self._entries)
            self._entries.clear()
            return dropped
        keys = [
            key
            for key in self._entries
            if key[0] == kind and (name is None or key[1] == name)
        ]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def handle_notification(self, _conn, _pid: int, channel: str, payload: str) -> None:
        """asyncpg ``add_listener`` callback; payload is ``<kind>:<name>``."""
        kind_value, sep, name = payload.partition(":")
        try:
            kind = DefinitionKind(kind_value)
        except ValueError:
            kind = None
        if not sep or kind is None:
            logger.warning("unrecognised definition change", channel=channel, payload=payload)
            self.invalidate()
            return
        dropped = self.invalidate(kind, name)
        logger.info("definition cache invalidated", kind=kind.value, name=name, dropped=dropped)

    def __len__(self) -> int:
        return len(self._entries)

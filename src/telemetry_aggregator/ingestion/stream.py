"""Redis Streams consumer-group source of telemetry batches."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from telemetry_aggregator.core.exceptions import MalformedStreamItemError
from telemetry_aggregator.domain.dto import StreamItem

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class StreamMessage:
    message_id: str
    fields: Mapping[str, Any]


class StreamSource(Protocol):
    async def open(self) -> None: ...

    async def read(self) -> list[StreamMessage]: ...

    async def ack(self, message_ids: Sequence[str]) -> None: ...

    async def close(self) -> None: ...


def parse_stream_message(message: StreamMessage) -> StreamItem:
    """``{"session_id": "42", "payload": "<json>"}`` -> ``StreamItem``.

    The message id becomes the delivery id, so redelivery is recognisable.
    """
    fields = message.fields
    if "session_id" not in fields or "payload" not in fields:
        raise MalformedStreamItemError(
            f"Stream message {message.message_id} needs 'session_id' and 'payload'"
        )
    payload = fields["payload"]
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            # Left as text; the evaluator decides it is unparseable.
            pass
    try:
        return StreamItem(
            session_id=fields["session_id"],
            payload=payload,
            delivery_id=message.message_id,
        )
    except ValidationError as exc:
        raise MalformedStreamItemError(
            f"Stream message {message.message_id} is malformed: {exc.errors()[0]['msg']}"
        ) from exc


class RedisStreamSource:
    """Reads a stream through a consumer group.

    Entries delivered to this consumer but never acknowledged (a crash before
    the batch was stored) are read first; after that only new entries.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        stream: str,
        group: str,
        consumer: str,
        count: int = 100,
        block_ms: int = 1000,
        client: Redis | None = None,
    ):
        self._redis_url = redis_url
        self._stream = stream
        self._group = group
        self._consumer = consumer
        self._count = count
        self._block_ms = block_ms
        self._client = client
        self._backlog_drained = False

    async def open(self) -> None:
        if self._client is None:
            self._client = Redis.from_url(
                self._redis_url, encoding="utf-8", decode_responses=True
            )
        try:
            await self._client.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info("stream group created", stream=self._stream, group=self._group)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._backlog_drained = False

    async def read(self) -> list[StreamMessage]:
        assert self._client is not None, "open() must be called first"
        start_id = ">" if self._backlog_drained else "0"
        response = await self._client.xreadgroup(
            self._group,
            self._consumer,
            {self._stream: start_id},
            count=self._count,
            block=None if start_id == "0" else self._block_ms,
        )
        messages = [
            StreamMessage(message_id=message_id, fields=fields or {})
            for _stream, entries in response or []
            for message_id, fields in entries
        ]
        if not self._backlog_drained and not messages:
            self._backlog_drained = True
            logger.info("stream backlog drained", stream=self._stream, consumer=self._consumer)
        return messages

    async def ack(self, message_ids: Sequence[str]) -> None:
        if not message_ids:
            return
        assert self._client is not None, "open() must be called first"
        await self._client.xack(self._stream, self._group, *message_ids)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

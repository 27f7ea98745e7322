"""Audited reprocessing of error batches."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from telemetry_aggregator.api.utils import parse_id, read_json
from telemetry_aggregator.core.exceptions import (
    BatchNotReprocessableError,
    NotFoundError,
    SessionClosedError,
)
from telemetry_aggregator.domain.dto import BatchReprocessDTO
from telemetry_aggregator.services.dependencies import get_pipeline

routes = web.RouteTableDef()


@routes.post("/api/v1/batches/{batch_id}/reprocess")
async def reprocess_batch(request: web.Request):
    batch_id = parse_id(request.match_info["batch_id"], "batch_id")
    body = await read_json(request)
    try:
        dto = BatchReprocessDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    pipeline = get_pipeline(request)
    try:
        batch = await pipeline.reprocess_batch(
            batch_id, requested_by=dto.requested_by, reason=dto.reason
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except (BatchNotReprocessableError, SessionClosedError) as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(batch.model_dump(mode="json"), status=202)

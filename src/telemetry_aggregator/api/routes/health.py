"""Liveness endpoint."""
from __future__ import annotations

from aiohttp import web

from telemetry_aggregator.services.dependencies import PIPELINE_KEY
from telemetry_aggregator.settings import settings

routes = web.RouteTableDef()


@routes.get("/health")
async def healthcheck(request: web.Request):
    payload = {"status": "ok", "service": settings.app_name, "env": settings.env}
    pipeline = request.app.get(PIPELINE_KEY)
    if pipeline is not None:
        payload["lanes"] = len(pipeline.scheduler.lanes)
    return web.json_response(payload)

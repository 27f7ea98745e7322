"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from telemetry_aggregator.api.routes import batches, health, sessions

ROUTE_MODULES = [health, sessions, batches]


def setup_routes(app: web.Application) -> None:
    """Attach routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)

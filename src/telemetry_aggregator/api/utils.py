"""Helper utilities for API handlers."""
from __future__ import annotations

from typing import Any

from aiohttp import web


def parse_id(value: str, label: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc
    if parsed < 1:
        raise web.HTTPBadRequest(text=f"Invalid {label}")
    return parsed


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body; an empty body reads as ``{}``."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data

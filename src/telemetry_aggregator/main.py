"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

import structlog
from aiohttp import web
from asyncpg import Connection  # type: ignore[import-untyped]

from telemetry_aggregator.api.middleware import create_trace_middleware
from telemetry_aggregator.api.router import setup_routes
from telemetry_aggregator.db import pool as db_pool
from telemetry_aggregator.db.migrations import create_migration_runner
from telemetry_aggregator.logging_config import configure_logging
from telemetry_aggregator.services.dependencies import PIPELINE_KEY, Pipeline, build_pipeline
from telemetry_aggregator.services.lookup_cache import NOTIFY_CHANNEL
from telemetry_aggregator.settings import settings
from telemetry_aggregator.worker import BackgroundWorker, WorkerTask
from telemetry_aggregator.workers import make_lane_reaper, make_pending_recovery

logger = structlog.get_logger(__name__)

_LISTENER_KEY = web.AppKey("definition_listener", Connection)
_WORKER_KEY = web.AppKey("background_worker", BackgroundWorker)

MIGRATION_PATHS = [
    Path(__file__).resolve().parent.parent.parent / "migrations",  # source checkout
    Path("/app/migrations"),  # container
]


async def build_pipeline_on_startup(app: web.Application) -> None:
    pool = await db_pool.get_pool()
    app[PIPELINE_KEY] = build_pipeline(pool, settings)


async def listen_definition_changes(app: web.Application) -> None:
    """Keep a dedicated connection subscribed to registry change notifications."""
    pipeline = app[PIPELINE_KEY]
    conn = await pipeline.pool.acquire()
    await conn.add_listener(NOTIFY_CHANNEL, pipeline.cache.handle_notification)
    app[_LISTENER_KEY] = conn


async def stop_listening_definition_changes(app: web.Application) -> None:
    conn = app.get(_LISTENER_KEY)
    if conn is None:
        return
    pipeline = app[PIPELINE_KEY]
    await conn.remove_listener(NOTIFY_CHANNEL, pipeline.cache.handle_notification)
    await pipeline.pool.release(conn)


async def start_scheduler(app: web.Application) -> None:
    await app[PIPELINE_KEY].scheduler.start()


async def stop_scheduler(app: web.Application) -> None:
    pipeline = app.get(PIPELINE_KEY)
    if pipeline is not None:
        await pipeline.scheduler.stop()


def create_worker(pipeline: Pipeline) -> BackgroundWorker:
    scheduler = pipeline.scheduler
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="pending_recovery",
                fn=make_pending_recovery(
                    scheduler, min_age_seconds=settings.recovery_min_age_seconds
                ),
            ),
            WorkerTask(name="lane_reaper", fn=make_lane_reaper(scheduler)),
        ],
    )


async def start_worker(app: web.Application) -> None:
    worker = create_worker(app[PIPELINE_KEY])
    app[_WORKER_KEY] = worker
    await worker.start(app)


async def stop_worker(app: web.Application) -> None:
    worker = app.get(_WORKER_KEY)
    if worker is not None:
        await worker.stop(app)


def create_app(pipeline: Pipeline | None = None) -> web.Application:
    """Build the service app.

    With ``pipeline`` given, only the HTTP surface is wired (no database,
    stream or background work is started).
    """
    app = web.Application(middlewares=[create_trace_middleware(settings.app_name)])
    setup_routes(app)

    if pipeline is not None:
        app[PIPELINE_KEY] = pipeline
        return app

    app.on_startup.append(db_pool.init_pool)
    app.on_startup.append(create_migration_runner(settings, MIGRATION_PATHS))
    app.on_startup.append(build_pipeline_on_startup)
    app.on_startup.append(listen_definition_changes)
    app.on_startup.append(start_scheduler)
    app.on_startup.append(start_worker)

    app.on_cleanup.append(stop_worker)
    app.on_cleanup.append(stop_scheduler)
    app.on_cleanup.append(stop_listening_definition_changes)
    app.on_cleanup.append(db_pool.close_pool)
    return app


def main() -> None:
    configure_logging(settings.log_level)
    logger.info("starting", service=settings.app_name, env=settings.env, port=settings.port)
    web.run_app(create_app(), host=settings.host, port=settings.port, print=None)


if __name__ == "__main__":
    main()

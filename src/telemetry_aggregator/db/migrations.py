"""Plain-SQL schema migrations applied when the service starts."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog

logger = structlog.get_logger(__name__)

# Serializes runners of several aggregator processes starting together.
MIGRATION_LOCK_ID = 0x7E1E_A660

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version text PRIMARY KEY,
    checksum text NOT NULL,
    applied_at timestamptz NOT NULL DEFAULT now()
)
"""


class SettingsProtocol(Protocol):
    database_url: Any


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def load_migrations(migrations_dir: Path) -> dict[str, Path]:
    """``*.sql`` files keyed by version (file stem), in apply order."""
    migrations: dict[str, Path] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        migrations[path.stem] = path
    return migrations


def pending_migrations(
    migrations: Mapping[str, Path], applied: Mapping[str, str]
) -> list[Migration]:
    """Migrations not yet in the ledger.

    An applied migration whose file changed since is an error: the schema in
    the database no longer matches the source tree.
    """
    pending = []
    for version, path in migrations.items():
        migration = Migration(version, path, path.read_text(encoding="utf-8"))
        recorded = applied.get(version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(
                f"Checksum mismatch for {version}: "
                f"{recorded} (db) != {migration.checksum} (file)"
            )
    return pending


async def _connect(dsn: str, *, max_retries: int, retry_delay: float) -> asyncpg.Connection:
    for attempt in range(1, max_retries + 1):
        try:
            return await asyncpg.connect(dsn)
        except (
            OSError,
            asyncpg.exceptions.PostgresConnectionError,
            asyncpg.exceptions.CannotConnectNowError,
        ) as exc:
            logger.warning(
                "database connection failed",
                attempt=attempt,
                max_retries=max_retries,
                error=str(exc),
            )
            if attempt == max_retries:
                raise
            await asyncio.sleep(retry_delay)
    raise RuntimeError("max_retries must be positive")


async def apply_migrations(conn: asyncpg.Connection, migrations: Mapping[str, Path]) -> int:
    """Apply pending migrations, each in its own transaction. Returns how many ran."""
    await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
    try:
        await conn.execute(_CREATE_LEDGER)
        rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
        pending = pending_migrations(migrations, {r["version"]: r["checksum"] for r in rows})
        for migration in pending:
            logger.info("applying migration", migration=migration.path.name)
            async with conn.transaction():
                await conn.execute(migration.sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                    migration.version,
                    migration.checksum,
                )
        return len(pending)
    finally:
        await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


def create_migration_runner(
    settings: SettingsProtocol,
    possible_paths: Iterable[Path],
    *,
    max_retries: int = 5,
    retry_delay: float = 2.0,
) -> Callable[[Any], Awaitable[None]]:
    """aiohttp startup hook applying the first existing migrations directory."""
    candidates = list(possible_paths)

    async def apply_migrations_on_startup(_app: Any = None) -> None:
        migrations_dir = next((path for path in candidates if path.exists()), None)
        if migrations_dir is None:
            logger.warning(
                "migrations directory not found", tried=[str(p) for p in candidates]
            )
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("no migrations found", path=str(migrations_dir))
            return

        conn = await _connect(
            str(settings.database_url), max_retries=max_retries, retry_delay=retry_delay
        )
        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        if applied:
            logger.info("migrations applied", count=applied)
        else:
            logger.info("no pending migrations")

    return apply_migrations_on_startup

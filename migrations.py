"""
Database Migration System

Applies versioned SQL files from migrations/NNN_name.sql.
Each migration runs in its own transaction and is recorded in schema_migrations,
so a failed migration rolls back alone and already applied ones stay applied.
"""
import re
import logging
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

# Путь к папке с миграциями
MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME = re.compile(r'^(\d+)_(.+)\.sql$')


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    Список файлов миграций, отсортированный по числовой версии

    Returns:
        [(version, path), ...]
    """
    if not directory.exists():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    migrations = []
    for file_path in directory.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Числовая сортировка: 010 после 009, а не после 001
    migrations.sort(key=lambda item: int(item[0]))
    return migrations


def pending_migrations(applied: Set[str], files: List[Tuple[str, Path]]) -> List[Tuple[str, Path]]:
    return [(version, path) for version, path in files if version not in applied]


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Применить одну миграцию (conn уже в транзакции)

    Raises:
        asyncpg.PostgresError: SQL миграции не выполнился
    """
    sql_content = migration_path.read_text(encoding="utf-8")
    if not sql_content.strip():
        logger.warning(f"Migration {version} is empty, skipping")
    else:
        logger.info(f"Applying migration {version}: {migration_path.name}")
        # asyncpg executes multi-statement SQL natively
        await conn.execute(sql_content)

    await conn.execute(
        "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
        version,
    )
    logger.info(f"Migration {version} applied successfully")


async def run_migrations(conn: asyncpg.Connection) -> bool:
    """
    Применить все неприменённые миграции

    Returns:
        True если все миграции применены, False при ошибке
    """
    try:
        await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        todo = pending_migrations(applied, get_migration_files())
        logger.info(f"Applied migrations: {sorted(applied)}, pending: {[v for v, _ in todo]}")

        for version, migration_path in todo:
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        return True
    except Exception as e:
        logger.exception(f"CRITICAL: migrations failed, database initialization stopped: {e}")
        return False


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """Применить миграции, взяв соединение из пула"""
    async with pool.acquire() as conn:
        return await run_migrations(conn)

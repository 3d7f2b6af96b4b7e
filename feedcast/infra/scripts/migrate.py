"""Apply SQL migrations sequentially over one asyncpg connection."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from feedcast.libs.logging_utils import configure_logging
from feedcast.libs.schemas import create_pool

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"
_COMMENT_RE = re.compile(r"--.*?$|/\*.*?\*/", re.MULTILINE | re.DOTALL)


def split_sql(sql: str) -> list[str]:
    """Return individual statements stripped of comments and whitespace."""

    cleaned = _COMMENT_RE.sub("", sql)
    statements: list[str] = []
    for chunk in cleaned.split(";"):
        statement = chunk.strip()
        if statement:
            statements.append(statement)
    return statements


def sorted_migration_paths(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    """Return migration files ordered lexicographically by filename."""

    if not directory.exists():
        return []
    return sorted(p for p in directory.iterdir() if p.suffix == ".sql")


async def apply_migrations(dsn: str | None = None) -> int:
    """Execute every migration file in its own transaction; return the count applied."""

    migration_files = sorted_migration_paths()
    if not migration_files:
        return 0

    pool = await create_pool(dsn)
    applied = 0
    try:
        async with pool.acquire() as connection:
            for path in migration_files:
                statements = split_sql(path.read_text(encoding="utf-8"))
                if not statements:
                    continue
                async with connection.transaction():
                    for statement in statements:
                        await connection.execute(statement)
                applied += 1
                LOGGER.info("Applied migration %s", path.name, extra={"event": "migrate.applied"})
    finally:
        await pool.close()
    return applied


def main() -> None:  # pragma: no cover - CLI entrypoint
    configure_logging()
    asyncio.run(apply_migrations())


if __name__ == "__main__":  # pragma: no cover
    main()

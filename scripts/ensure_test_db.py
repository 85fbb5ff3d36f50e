from __future__ import annotations

import asyncio
import re

import asyncpg
from sqlalchemy.engine import make_url

from app.core.config import get_settings
from app.core.integration_db_safety import assess_integration_db_safety

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


async def _ensure_database_exists(database_url: str) -> str:
    safety = assess_integration_db_safety(database_url)
    if not safety.is_safe:
        raise RuntimeError(f"Refusing to create database: {safety.reason}")
    if IDENTIFIER_RE.fullmatch(safety.database_name) is None:
        raise RuntimeError(f"Unsupported database name '{safety.database_name}'.")

    parsed = make_url(database_url)
    conn = await asyncpg.connect(
        host=parsed.host or "localhost",
        port=int(parsed.port or 5432),
        user=parsed.username,
        password=parsed.password,
        database="postgres",
    )
    try:
        if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", safety.database_name):
            return "exists"
        await conn.execute(f'CREATE DATABASE "{safety.database_name}"')
        return "created"
    finally:
        await conn.close()


def main() -> int:
    settings = get_settings()
    outcome = asyncio.run(_ensure_database_exists(settings.database_url))
    print(f"ensure_test_db: {outcome} db={make_url(settings.database_url).database}")  # noqa: T201
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import pytest
from sqlalchemy import text

import app.db.models  # noqa: F401
from app.core.integration_db_safety import assert_safe_integration_db
from app.db.models.base import Base
from app.db.session import engine


def _truncate_sql() -> str:
    tables = ", ".join(table.name for table in reversed(Base.metadata.sorted_tables))
    return f"TRUNCATE TABLE {tables} RESTART IDENTITY CASCADE"


async def _skip_without_postgres() -> None:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:  # pragma: no cover - environment-dependent
        pytest.skip(f"Postgres is required for access integration tests: {exc}")


@pytest.fixture(scope="session", autouse=True)
def guard_integration_db_target() -> None:
    assert_safe_integration_db(str(engine.url))


@pytest.fixture(autouse=True)
async def clean_access_tables() -> None:
    # asyncpg connections are bound to the loop that opened them.
    await engine.dispose()
    await _skip_without_postgres()

    async with engine.begin() as conn:
        await conn.execute(text(_truncate_sql()))

    yield

    await engine.dispose()

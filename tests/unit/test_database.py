"""Unit tests for engine creation and schema management."""

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from commission_builder.core.config import DatabaseSettings
from commission_builder.core.database import DatabaseClient, create_engine_from_settings


class TestDatabaseSettings:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u:p@db/x", "postgresql+asyncpg://u:p@db/x"),
            ("postgresql://u:p@db/x", "postgresql+asyncpg://u:p@db/x"),
            ("sqlite+aiosqlite:///tmp.db", "sqlite+aiosqlite:///tmp.db"),
        ],
    )
    def test_connection_url(self, url, expected):
        assert DatabaseSettings(url=url).connection_url == expected

    @pytest.mark.asyncio
    async def test_sqlite_engine_has_no_pool_arguments(self):
        engine = create_engine_from_settings(DatabaseSettings(url="sqlite+aiosqlite://"))

        assert engine.dialect.name == "sqlite"
        await engine.dispose()


class TestDatabaseClient:
    """Tests for DatabaseClient.create_tables."""

    @pytest.mark.asyncio
    async def test_create_tables_is_repeatable(self):
        engine = create_async_engine(
            "sqlite+aiosqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
        client = DatabaseClient(engine)

        await client.create_tables()
        await client.create_tables()

        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        await engine.dispose()

        assert {"input_certificates", "pipeline_runs", "pipeline_steps", "stg_proposals"} <= set(tables)

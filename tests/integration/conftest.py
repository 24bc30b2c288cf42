"""Integration fixtures: a real PostgreSQL database with the MortiScope schema."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mortiscope.core.datastore.postgres import PostgresDatastore
from mortiscope.core.models.broker import PostgresConfig
from mortiscope.core.store.postgres import PostgresStepStore

DB_URL = (
    f'postgresql+psycopg://postgres:{os.environ.get("DB_PASSWORD", "postgres")}'
    '@localhost:5432/mortiscope'
)


@pytest.fixture(scope='session')
def db_url() -> str:
    """Database connection URL."""
    return DB_URL


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(db_url, echo=False)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def step_store(engine: AsyncEngine, db_url: str) -> PostgresStepStore:
    """Step store on a schema emptied before each test."""
    store = PostgresStepStore(PostgresConfig(database_url=db_url), engine=engine)
    await store.ensure_schema_initialized()
    async with engine.begin() as conn:
        await conn.execute(
            text(
                'TRUNCATE mortiscope_steps, mortiscope_runs, account_deletion_tokens, '
                'exports, analysis_results, cases, users CASCADE'
            )
        )
    return store


@pytest_asyncio.fixture
async def pg_datastore(
    engine: AsyncEngine, db_url: str, step_store: PostgresStepStore
) -> PostgresDatastore:
    return PostgresDatastore(PostgresConfig(database_url=db_url), engine=engine)

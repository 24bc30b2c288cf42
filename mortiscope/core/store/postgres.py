from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import CursorResult
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from mortiscope.core.codec.serde import dumps_json
from mortiscope.core.logging import get_logger
from mortiscope.core.models.broker import PostgresConfig
from mortiscope.core.models.events import EventEnvelope
from mortiscope.core.models.run_pg import Base, WorkflowRunModel
from mortiscope.core.models.runs import NewRun, RunInfo, RunRecord, StepKind, StepRecord
from mortiscope.core.store.sql import (
    CLAIM_ADVISORY_LOCK_SQL,
    CLAIM_RUNS_SQL,
    COMPLETE_RUN_SQL,
    FAIL_RUN_SQL,
    GET_RUN_SQL,
    GET_STEP_SQL,
    INSERT_STEP_SQL,
    LIST_STEP_NAMES_SQL,
    LOAD_STEPS_SQL,
    RENEW_LEASE_SQL,
    RETRY_RUN_SQL,
    SCHEMA_ADVISORY_LOCK_SQL,
    SUSPEND_RUN_SQL,
)
from mortiscope.core.types.status import RunStatus


def _advisory_key(namespace: bytes, basis: str) -> int:
    """Stable signed 64-bit advisory lock key, scoped to one database URL."""
    h = hashlib.sha256(namespace + basis.encode('utf-8', errors='ignore')).digest()
    return int.from_bytes(h[:8], byteorder='big', signed=True)


def _rowcount(result: Any) -> int:
    if isinstance(result, CursorResult):
        return result.rowcount
    return 0


class PostgresStepStore:
    """
    Step store backed by two PostgreSQL tables: mortiscope_runs and mortiscope_steps.

    Claiming uses FOR UPDATE SKIP LOCKED under a per-database advisory lock, so
    any number of workers can poll the same tables. Claimed runs carry a lease;
    every later write is fenced on the claiming worker id.
    """

    def __init__(self, config: PostgresConfig, *, engine: AsyncEngine | None = None):
        self.config = config
        self.logger = get_logger('store')
        self._owns_engine = engine is None
        self.async_engine = engine or create_async_engine(
            self.config.database_url, **self.config.engine_kwargs()
        )
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._schema_key = _advisory_key(b'mortiscope-schema:', config.database_url)
        self._claim_key = _advisory_key(b'mortiscope-claim:', config.database_url)
        self._initialized = False

    async def ensure_schema_initialized(self) -> None:
        """
        Create the run and step tables (and, since they share the metadata,
        the domain tables) if missing.

        Safe to call multiple times and from multiple processes; guarded by a
        PostgreSQL advisory lock to avoid DDL races.
        """
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            await conn.execute(SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_key})
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True
        self.logger.info('Step store schema ready')

    async def close_async(self) -> None:
        if self._owns_engine:
            await self.async_engine.dispose()

    # ----------------- Runs -----------------

    async def create_runs(self, runs: Sequence[NewRun]) -> list[str]:
        if not runs:
            return []
        rows = [
            {
                'id': run.id,
                'workflow_id': run.workflow_id,
                'event_id': run.event.id,
                'event_name': run.event.name,
                'event_data': run.event.data,
                'event_ts': run.event.ts,
                'status': RunStatus.PENDING,
                'attempt': 0,
                'max_retries': run.max_retries,
                'next_run_at': run.next_run_at,
                'concurrency_key': run.concurrency_key,
            }
            for run in runs
        ]
        stmt = (
            pg_insert(WorkflowRunModel)
            .values(rows)
            .on_conflict_do_nothing(index_elements=['id'])
            .returning(WorkflowRunModel.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            inserted = [row[0] for row in result.fetchall()]
            await session.commit()
        return inserted

    async def claim_runs(
        self,
        *,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
        limit: int,
    ) -> list[RunRecord]:
        async with self.session_factory() as session:
            await session.execute(CLAIM_ADVISORY_LOCK_SQL, {'key': self._claim_key})
            result = await session.execute(
                CLAIM_RUNS_SQL,
                {
                    'now': now,
                    'lease_until': lease_until,
                    'worker_id': worker_id,
                    'lim': limit,
                },
            )
            rows = result.fetchall()
            await session.commit()

        return [
            RunRecord(
                id=row.id,
                workflow_id=row.workflow_id,
                event=EventEnvelope(
                    id=row.event_id,
                    name=row.event_name,
                    data=dict(row.event_data or {}),
                    ts=row.event_ts,
                ),
                status=RunStatus.RUNNING,
                attempt=row.attempt,
                max_retries=row.max_retries,
                concurrency_key=row.concurrency_key,
            )
            for row in rows
        ]

    async def renew_lease(
        self, run_id: str, *, worker_id: str, lease_until: datetime
    ) -> bool:
        return await self._fenced_update(
            RENEW_LEASE_SQL,
            {'id': run_id, 'worker_id': worker_id, 'lease_until': lease_until},
        )

    async def complete_run(
        self, run_id: str, *, worker_id: str, output: Any, now: datetime
    ) -> bool:
        return await self._fenced_update(
            COMPLETE_RUN_SQL,
            {
                'id': run_id,
                'worker_id': worker_id,
                'output': dumps_json(output),
                'now': now,
            },
        )

    async def suspend_run(
        self, run_id: str, *, worker_id: str, wake_at: datetime
    ) -> bool:
        return await self._fenced_update(
            SUSPEND_RUN_SQL,
            {'id': run_id, 'worker_id': worker_id, 'wake_at': wake_at},
        )

    async def retry_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        next_run_at: datetime,
        error: str,
    ) -> bool:
        return await self._fenced_update(
            RETRY_RUN_SQL,
            {
                'id': run_id,
                'worker_id': worker_id,
                'attempt': attempt,
                'next_run_at': next_run_at,
                'error': error,
            },
        )

    async def fail_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        error: str,
        now: datetime,
    ) -> bool:
        return await self._fenced_update(
            FAIL_RUN_SQL,
            {
                'id': run_id,
                'worker_id': worker_id,
                'attempt': attempt,
                'error': error,
                'now': now,
            },
        )

    async def _fenced_update(self, stmt: Any, params: dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(stmt, params)
            await session.commit()
        updated = _rowcount(result) == 1
        if not updated:
            self.logger.warning(
                f"Run {params['id']} is no longer owned by worker {params['worker_id']}"
            )
        return updated

    # ----------------- Steps -----------------

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        async with self.session_factory() as session:
            result = await session.execute(LOAD_STEPS_SQL, {'run_id': run_id})
            rows = result.fetchall()
        return {
            row.step_name: StepRecord(
                run_id=run_id,
                name=row.step_name,
                kind=StepKind(row.kind),
                output=row.output,
                wake_at=row.wake_at,
            )
            for row in rows
        }

    async def save_step(self, step: StepRecord) -> StepRecord:
        async with self.session_factory() as session:
            result = await session.execute(
                INSERT_STEP_SQL,
                {
                    'run_id': step.run_id,
                    'step_name': step.name,
                    'kind': step.kind.value,
                    'output': dumps_json(step.output),
                    'wake_at': step.wake_at,
                },
            )
            inserted = result.fetchone() is not None
            if inserted:
                await session.commit()
                return step

            # Another owner memoized this step first; its outcome wins
            existing = (
                await session.execute(
                    GET_STEP_SQL, {'run_id': step.run_id, 'step_name': step.name}
                )
            ).fetchone()
            await session.commit()

        if existing is None:
            return step
        return StepRecord(
            run_id=step.run_id,
            name=existing.step_name,
            kind=StepKind(existing.kind),
            output=existing.output,
            wake_at=existing.wake_at,
        )

    # ----------------- Inspection -----------------

    async def get_run(self, run_id: str) -> RunInfo | None:
        async with self.session_factory() as session:
            row = (await session.execute(GET_RUN_SQL, {'id': run_id})).fetchone()
            if row is None:
                return None
            step_rows = (
                await session.execute(LIST_STEP_NAMES_SQL, {'run_id': run_id})
            ).fetchall()
        return RunInfo(
            run_id=row.id,
            workflow_id=row.workflow_id,
            event_name=row.event_name,
            status=RunStatus(row.status),
            attempt=row.attempt,
            max_retries=row.max_retries,
            next_run_at=row.next_run_at,
            output=row.output,
            error=row.error,
            completed_steps=[r.step_name for r in step_rows],
        )

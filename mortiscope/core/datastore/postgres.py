from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import CursorResult, delete, exists, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mortiscope.core.datastore.base import ensure_not_failed
from mortiscope.core.logging import get_logger
from mortiscope.core.models.broker import PostgresConfig
from mortiscope.core.models.domain_pg import (
    AccountDeletionTokenModel,
    AnalysisResultModel,
    CaseModel,
    ExportModel,
    UserModel,
)
from mortiscope.core.models.records import (
    AnalysisOutcome,
    AnalysisResultRecord,
    CaseRecord,
    DeletionTokenRecord,
    ExportRecord,
    ExportScope,
    UserRecord,
)
from mortiscope.core.types.status import RecordStatus, allowed_sources


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _changed(result: Any) -> bool:
    return isinstance(result, CursorResult) and result.rowcount > 0


def _user_record(row: UserModel) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        name=row.name,
        deletion_scheduled_at=row.deletion_scheduled_at,
    )


class PostgresTransaction:
    """Operations bound to one open session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_user_for_update(self, user_id: str) -> UserRecord | None:
        row = (
            await self._session.execute(
                select(UserModel).where(UserModel.id == user_id).with_for_update()
            )
        ).scalar_one_or_none()
        return _user_record(row) if row is not None else None

    async def delete_user(self, user_id: str) -> bool:
        result = await self._session.execute(
            delete(UserModel).where(UserModel.id == user_id)
        )
        return _changed(result)


class PostgresDatastore:
    """Datastore over the application's tables (users, cases, analysis_results,
    exports, account_deletion_tokens)."""

    def __init__(self, config: PostgresConfig, *, engine: AsyncEngine | None = None):
        self.config = config
        self.logger = get_logger('datastore')
        self._owns_engine = engine is None
        self.async_engine = engine or create_async_engine(
            self.config.database_url, **self.config.engine_kwargs()
        )
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

    async def close_async(self) -> None:
        if self._owns_engine:
            await self.async_engine.dispose()

    async def _execute(self, stmt: Any) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return _changed(result)

    # ----------------- Analysis results -----------------

    def _guarded_analysis_update(
        self, case_id: str, target: RecordStatus, *, recalculation: bool = False
    ) -> Any:
        sources = allowed_sources(target, recalculation=recalculation)
        return update(AnalysisResultModel).where(
            AnalysisResultModel.case_id == case_id,
            AnalysisResultModel.status.in_(sources),
        )

    async def set_analysis_status(
        self, case_id: str, status: RecordStatus, *, recalculation: bool = False
    ) -> bool:
        ensure_not_failed(status)
        stmt = self._guarded_analysis_update(
            case_id, status, recalculation=recalculation
        ).values(status=status, updated_at=_utcnow())
        changed = await self._execute(stmt)
        if not changed:
            self.logger.warning(
                f'Analysis result for case {case_id} not moved to {status.value}'
            )
        return changed

    async def save_analysis_result(self, case_id: str, outcome: AnalysisOutcome) -> bool:
        stmt = self._guarded_analysis_update(case_id, RecordStatus.COMPLETED).values(
            status=RecordStatus.COMPLETED,
            total_counts=outcome.total_counts,
            oldest_stage_detected=outcome.oldest_stage_detected,
            pmi_source_image_key=outcome.pmi_source_image_key,
            pmi_days=outcome.pmi_days,
            pmi_hours=outcome.pmi_hours,
            pmi_minutes=outcome.pmi_minutes,
            stage_used_for_calculation=outcome.stage_used_for_calculation,
            temperature_provided=outcome.temperature_provided,
            calculated_adh=outcome.calculated_adh,
            ldt_used=outcome.ldt_used,
            explanation=outcome.explanation,
            updated_at=_utcnow(),
        )
        return await self._execute(stmt)

    async def complete_analysis(
        self, case_id: str, *, explanation: str | None = None
    ) -> bool:
        values: dict[str, Any] = {
            'status': RecordStatus.COMPLETED,
            'updated_at': _utcnow(),
        }
        if explanation is not None:
            values['explanation'] = explanation
        stmt = self._guarded_analysis_update(case_id, RecordStatus.COMPLETED).values(
            **values
        )
        return await self._execute(stmt)

    async def mark_analysis_failed(self, case_id: str, explanation: str) -> bool:
        stmt = self._guarded_analysis_update(case_id, RecordStatus.FAILED).values(
            status=RecordStatus.FAILED,
            explanation=explanation,
            updated_at=_utcnow(),
        )
        return await self._execute(stmt)

    async def analysis_result_exists(self, case_id: str) -> bool:
        async with self.session_factory() as session:
            return bool(
                await session.scalar(
                    select(exists().where(AnalysisResultModel.case_id == case_id))
                )
            )

    async def get_analysis_result(self, case_id: str) -> AnalysisResultRecord | None:
        async with self.session_factory() as session:
            row = await session.get(AnalysisResultModel, case_id)
        if row is None:
            return None
        return AnalysisResultRecord(
            case_id=row.case_id,
            status=row.status,
            explanation=row.explanation,
            total_counts=row.total_counts,
            oldest_stage_detected=row.oldest_stage_detected,
            pmi_source_image_key=row.pmi_source_image_key,
            pmi_days=row.pmi_days,
            pmi_hours=row.pmi_hours,
            pmi_minutes=row.pmi_minutes,
            stage_used_for_calculation=row.stage_used_for_calculation,
            temperature_provided=row.temperature_provided,
            calculated_adh=row.calculated_adh,
            ldt_used=row.ldt_used,
            updated_at=row.updated_at,
        )

    # ----------------- Cases -----------------

    async def get_case(self, case_id: str) -> CaseRecord | None:
        async with self.session_factory() as session:
            row = await session.get(CaseModel, case_id)
        if row is None:
            return None
        return CaseRecord(id=row.id, recalculation_needed=row.recalculation_needed)

    async def clear_recalculation_flag(self, case_id: str) -> bool:
        return await self._execute(
            update(CaseModel)
            .where(CaseModel.id == case_id)
            .values(recalculation_needed=False)
        )

    # ----------------- Exports -----------------

    async def set_export_status(self, export_id: str, status: RecordStatus) -> bool:
        ensure_not_failed(status)
        changed = await self._execute(
            update(ExportModel)
            .where(
                ExportModel.id == export_id,
                ExportModel.status.in_(allowed_sources(status)),
            )
            .values(status=status)
        )
        if not changed:
            self.logger.warning(f'Export {export_id} not moved to {status.value}')
        return changed

    async def mark_export_failed(self, export_id: str, reason: str) -> bool:
        return await self._execute(
            update(ExportModel)
            .where(
                ExportModel.id == export_id,
                ExportModel.status.in_(allowed_sources(RecordStatus.FAILED)),
            )
            .values(status=RecordStatus.FAILED, failure_reason=reason)
        )

    async def get_export(self, export_id: str) -> ExportRecord | None:
        async with self.session_factory() as session:
            row = await session.get(ExportModel, export_id)
        if row is None:
            return None
        return ExportRecord(
            id=row.id,
            scope=ExportScope(row.scope),
            format=row.format,
            status=row.status,
            case_id=row.case_id,
            upload_id=row.upload_id,
            failure_reason=row.failure_reason,
        )

    # ----------------- Account deletion -----------------

    async def get_deletion_token(self, token: str) -> DeletionTokenRecord | None:
        async with self.session_factory() as session:
            row = await session.get(AccountDeletionTokenModel, token)
        if row is None:
            return None
        return DeletionTokenRecord(
            token=row.token, identifier=row.identifier, expires=row.expires
        )

    async def delete_deletion_token(self, token: str) -> bool:
        return await self._execute(
            delete(AccountDeletionTokenModel).where(
                AccountDeletionTokenModel.token == token
            )
        )

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(select(UserModel).where(UserModel.email == email))
            ).scalar_one_or_none()
        return _user_record(row) if row is not None else None

    async def get_user(self, user_id: str) -> UserRecord | None:
        async with self.session_factory() as session:
            row = await session.get(UserModel, user_id)
        return _user_record(row) if row is not None else None

    async def schedule_user_deletion(self, user_id: str, when: datetime) -> bool:
        return await self._execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(deletion_scheduled_at=when)
        )

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        """Commit on normal exit, roll back if the block raises."""
        async with self.session_factory() as session:
            async with session.begin():
                yield PostgresTransaction(session)

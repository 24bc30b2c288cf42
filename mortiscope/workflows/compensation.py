"""Failure hooks: the only code that moves a record to `failed`.

Each hook parses the original triggering event into its tagged-union member
and pattern-matches the payload it owns. A payload that does not match is
logged and ignored; hooks never raise.
"""

from __future__ import annotations

from mortiscope.core.datastore.base import Datastore
from mortiscope.core.engine.definition import FailureHook
from mortiscope.core.errors import error_message
from mortiscope.core.logging import get_logger
from mortiscope.core.models.events import (
    AccountDeletionConfirmed,
    AccountDeletionExecute,
    AnalysisRequested,
    CaseExportRequested,
    ImageExportRequested,
    RecalculationRequested,
)
from mortiscope.core.models.runs import FailureContext
from mortiscope.core.types.result import Ok

logger = get_logger('compensation')

ANALYSIS_FAILED = 'Analysis failed'
RECALCULATION_FAILED = 'Recalculation failed'
EXPORT_FAILED = 'Export failed'
IMAGE_EXPORT_FAILED = 'Image export failed'


def failure_text(label: str, error: BaseException) -> str:
    """Text stored in explanation / failureReason."""
    return f'{label}: {error_message(error)}'


def _unusable_event(ctx: FailureContext) -> None:
    logger.error(
        f"Workflow '{ctx.workflow_id}' failed for run {ctx.run_id} but its event "
        f"'{ctx.event.name}' carries no usable id; nothing compensated",
        extra={'context': {'event_data': ctx.event.data}},
    )


async def _fail_analysis(
    datastore: Datastore, case_id: str, label: str, ctx: FailureContext
) -> None:
    reason = failure_text(label, ctx.error)
    if await datastore.mark_analysis_failed(case_id, reason):
        logger.error(f'Case {case_id} marked failed after {ctx.attempts} attempt(s): {reason}')
    else:
        logger.warning(f'Case {case_id}: no analysis result in a failable state; {reason}')


async def _fail_export(
    datastore: Datastore, export_id: str, label: str, ctx: FailureContext
) -> None:
    reason = failure_text(label, ctx.error)
    if await datastore.mark_export_failed(export_id, reason):
        logger.error(f'Export {export_id} marked failed after {ctx.attempts} attempt(s): {reason}')
    else:
        logger.warning(f'Export {export_id}: no export in a failable state; {reason}')


def analysis_failed(datastore: Datastore) -> FailureHook:
    async def on_failure(ctx: FailureContext) -> None:
        match ctx.event.parse():
            case Ok(ok_value=AnalysisRequested(data=payload)):
                await _fail_analysis(datastore, payload.case_id, ANALYSIS_FAILED, ctx)
            case _:
                _unusable_event(ctx)

    return on_failure


def recalculation_failed(datastore: Datastore) -> FailureHook:
    async def on_failure(ctx: FailureContext) -> None:
        match ctx.event.parse():
            case Ok(ok_value=RecalculationRequested(data=payload)):
                await _fail_analysis(datastore, payload.case_id, RECALCULATION_FAILED, ctx)
            case _:
                _unusable_event(ctx)

    return on_failure


def case_export_failed(datastore: Datastore) -> FailureHook:
    async def on_failure(ctx: FailureContext) -> None:
        match ctx.event.parse():
            case Ok(ok_value=CaseExportRequested(data=payload)):
                await _fail_export(datastore, payload.export_id, EXPORT_FAILED, ctx)
            case _:
                _unusable_event(ctx)

    return on_failure


def image_export_failed(datastore: Datastore) -> FailureHook:
    async def on_failure(ctx: FailureContext) -> None:
        match ctx.event.parse():
            case Ok(ok_value=ImageExportRequested(data=payload)):
                await _fail_export(datastore, payload.export_id, IMAGE_EXPORT_FAILED, ctx)
            case _:
                _unusable_event(ctx)

    return on_failure


async def deletion_confirmation_failed(ctx: FailureContext) -> None:
    # No record to compensate: the token flow has no status field
    match ctx.event.parse():
        case Ok(ok_value=AccountDeletionConfirmed(data=payload)):
            token = payload.token
        case _:
            token = 'unknown'
    logger.critical(
        f"Workflow '{ctx.workflow_id}' failed terminally for token {token}; "
        f'the deletion was NOT scheduled: {error_message(ctx.error)}'
    )


async def deletion_execution_failed(ctx: FailureContext) -> None:
    match ctx.event.parse():
        case Ok(ok_value=AccountDeletionExecute(data=payload)):
            user_id = payload.user_id
        case _:
            user_id = 'unknown'
    logger.critical(
        f"Workflow '{ctx.workflow_id}' failed terminally; user {user_id} was NOT "
        f'deleted and needs manual removal: {error_message(ctx.error)}'
    )

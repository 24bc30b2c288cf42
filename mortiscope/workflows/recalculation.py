from __future__ import annotations

from typing import Any

from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.step import StepContext
from mortiscope.core.logging import get_logger
from mortiscope.core.models.events import RecalculationRequested
from mortiscope.core.types.status import RecordStatus
from mortiscope.workflows.compensation import recalculation_failed
from mortiscope.workflows.deps import WorkflowDeps

RECALCULATION_WORKFLOW_ID = 'fastapi-recalculate-case'

logger = get_logger('recalculation')


class RecalculationNotApplied(Exception):
    """The analysis result was missing or could not be moved to completed."""


def build_recalculation_workflow(
    deps: WorkflowDeps,
) -> WorkflowDefinition[RecalculationRequested]:
    """PMI recalculation after case details changed.

    Runs for the same case never overlap (concurrency key `case_id`).
    """
    datastore = deps.datastore

    async def finalize(case_id: str) -> dict[str, bool]:
        completed = await datastore.complete_analysis(case_id)
        if not completed:
            # Keeps the flag set so the user can request another recalculation
            raise RecalculationNotApplied(
                f'Analysis result for case {case_id} could not be completed'
            )
        flag_cleared = await datastore.clear_recalculation_flag(case_id)
        return {'flag_cleared': flag_cleared, 'completed': completed}

    async def recalculate_case(
        event: RecalculationRequested, step: StepContext
    ) -> dict[str, Any]:
        case_id = event.data.case_id
        logger.info(f'Recalculation started for case {case_id} (run {step.run_id})')

        await step.run(
            'update-status-to-processing',
            lambda: datastore.set_analysis_status(
                case_id, RecordStatus.PROCESSING, recalculation=True
            ),
        )
        await step.run('run-recalculation', lambda: deps.client.recalculate(case_id))
        await step.run('finalize-recalculation-status', lambda: finalize(case_id))

        logger.info(f'Recalculation for case {case_id} completed')
        return {'message': f'Successfully completed recalculation for case: {case_id}'}

    return WorkflowDefinition(
        id=RECALCULATION_WORKFLOW_ID,
        name='Recalculation',
        trigger=RecalculationRequested,
        handler=recalculate_case,
        on_failure=recalculation_failed(datastore),
        concurrency_key='case_id',
    )

"""Analysis workflow: detection and PMI estimation for a newly created case."""

from __future__ import annotations

from typing import Any

from mortiscope.core.defaults import UPLOAD_GRACE_PERIOD
from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.step import StepContext
from mortiscope.core.logging import get_logger
from mortiscope.core.models.events import AnalysisRequested
from mortiscope.core.services.analysis import DetectionResponse
from mortiscope.core.types.status import RecordStatus
from mortiscope.workflows.compensation import analysis_failed
from mortiscope.workflows.deps import WorkflowDeps

ANALYSIS_WORKFLOW_ID = 'fastapi-analysis-event'

NO_DETECTION_EXPLANATION = (
    'Analysis complete. No insect evidence was detected in the provided images.'
)

logger = get_logger('analysis')


def build_analysis_workflow(deps: WorkflowDeps) -> WorkflowDefinition[AnalysisRequested]:
    datastore = deps.datastore

    async def analyze_case(event: AnalysisRequested, step: StepContext) -> dict[str, Any]:
        case_id = event.data.case_id
        logger.info(f'Analysis started for case {case_id} (run {step.run_id})')

        # Browser uploads may still be in flight when the case is created
        await step.sleep('wait-for-uploads', UPLOAD_GRACE_PERIOD)

        await step.run(
            'update-status-to-processing',
            lambda: datastore.set_analysis_status(case_id, RecordStatus.PROCESSING),
        )

        raw = await step.run('run-detection', lambda: deps.client.detect(case_id))
        detection = DetectionResponse.model_validate(raw or {})

        if not detection.has_detections:
            await step.run(
                'save-no-detection-result',
                lambda: datastore.complete_analysis(
                    case_id, explanation=NO_DETECTION_EXPLANATION
                ),
            )
            logger.info(f'Analysis for case {case_id} found no insect evidence')
            return {'message': 'Workflow ended early: No objects detected.'}

        exists = await step.run(
            'check-if-cancelled', lambda: datastore.analysis_result_exists(case_id)
        )
        if not exists:
            logger.info(f'Analysis for case {case_id} was cancelled; results discarded')
            return {'message': f'Analysis cancelled for case: {case_id}'}

        outcome = detection.to_outcome()
        await step.run(
            'save-analysis-results',
            lambda: datastore.save_analysis_result(case_id, outcome),
        )

        logger.info(
            f'Analysis for case {case_id} completed '
            f'(oldest stage {outcome.oldest_stage_detected})'
        )
        return {'message': f'Successfully completed analysis for case: {case_id}'}

    return WorkflowDefinition(
        id=ANALYSIS_WORKFLOW_ID,
        name='Analysis',
        trigger=AnalysisRequested,
        handler=analyze_case,
        on_failure=analysis_failed(datastore),
    )

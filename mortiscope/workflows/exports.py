"""Export workflows. They confirm dispatch to the export worker only; export
completion is reported by the worker itself."""

from __future__ import annotations

from typing import Any

from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.step import StepContext
from mortiscope.core.logging import get_logger
from mortiscope.core.models.events import CaseExportRequested, ImageExportRequested
from mortiscope.core.types.status import RecordStatus
from mortiscope.workflows.compensation import case_export_failed, image_export_failed
from mortiscope.workflows.deps import WorkflowDeps

CASE_EXPORT_WORKFLOW_ID = 'fastapi-export-case-data'
IMAGE_EXPORT_WORKFLOW_ID = 'fastapi-export-image-data'

logger = get_logger('export')


def build_case_export_workflow(
    deps: WorkflowDeps,
) -> WorkflowDefinition[CaseExportRequested]:
    datastore = deps.datastore

    async def export_case(event: CaseExportRequested, step: StepContext) -> dict[str, Any]:
        data = event.data
        logger.info(f'Case export {data.export_id} ({data.format}) for case {data.case_id}')

        await step.run(
            'update-export-status-to-processing',
            lambda: datastore.set_export_status(data.export_id, RecordStatus.PROCESSING),
        )
        result = await step.run(
            'trigger-export-worker',
            lambda: deps.client.export(data.export_id, data.format, case_id=data.case_id),
        )
        return {
            'message': f'Successfully dispatched export job for exportId: {data.export_id}',
            'result': result,
        }

    return WorkflowDefinition(
        id=CASE_EXPORT_WORKFLOW_ID,
        name='Case export',
        trigger=CaseExportRequested,
        handler=export_case,
        on_failure=case_export_failed(datastore),
    )


def build_image_export_workflow(
    deps: WorkflowDeps,
) -> WorkflowDefinition[ImageExportRequested]:
    datastore = deps.datastore

    async def export_image(event: ImageExportRequested, step: StepContext) -> dict[str, Any]:
        data = event.data
        logger.info(
            f'Image export {data.export_id} ({data.format}) for upload {data.upload_id}'
        )

        await step.run(
            'update-image-export-status-to-processing',
            lambda: datastore.set_export_status(data.export_id, RecordStatus.PROCESSING),
        )
        result = await step.run(
            'trigger-image-export-worker',
            lambda: deps.client.export(
                data.export_id, data.format, upload_id=data.upload_id
            ),
        )
        return {
            'message': (
                f'Successfully dispatched image export job for exportId: {data.export_id}'
            ),
            'result': result,
        }

    return WorkflowDefinition(
        id=IMAGE_EXPORT_WORKFLOW_ID,
        name='Image export',
        trigger=ImageExportRequested,
        handler=export_image,
        on_failure=image_export_failed(datastore),
    )

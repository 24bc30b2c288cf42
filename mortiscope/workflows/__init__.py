"""MortiScope workflows, registered explicitly at process startup."""

from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.executor import Executor
from mortiscope.workflows.account_deletion import (
    build_confirm_deletion_workflow,
    build_execute_deletion_workflow,
)
from mortiscope.workflows.analysis import build_analysis_workflow
from mortiscope.workflows.deps import WorkflowDeps
from mortiscope.workflows.exports import (
    build_case_export_workflow,
    build_image_export_workflow,
)
from mortiscope.workflows.recalculation import build_recalculation_workflow


def build_workflows(deps: WorkflowDeps) -> list[WorkflowDefinition]:
    return [
        build_analysis_workflow(deps),
        build_recalculation_workflow(deps),
        build_case_export_workflow(deps),
        build_image_export_workflow(deps),
        build_confirm_deletion_workflow(deps),
        build_execute_deletion_workflow(deps),
    ]


def register_workflows(executor: Executor, deps: WorkflowDeps) -> list[WorkflowDefinition]:
    """Register every MortiScope workflow with `executor`."""
    return [executor.register(definition) for definition in build_workflows(deps)]


__all__ = [
    'WorkflowDeps',
    'build_workflows',
    'register_workflows',
]

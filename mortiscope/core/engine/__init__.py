"""Durable step executor: workflow definitions, step memoization, run lifecycle."""

from mortiscope.core.engine.definition import WorkflowDefinition, workflow
from mortiscope.core.engine.executor import Executor, derive_run_id
from mortiscope.core.engine.registry import (
    DuplicateWorkflowIdError,
    NotRegistered,
    WorkflowRegistry,
)
from mortiscope.core.engine.step import StepContext, StepSuspended

__all__ = [
    'Executor',
    'StepContext',
    'StepSuspended',
    'WorkflowDefinition',
    'WorkflowRegistry',
    'NotRegistered',
    'DuplicateWorkflowIdError',
    'derive_run_id',
    'workflow',
]

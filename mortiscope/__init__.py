"""MortiScope - durable workflows for forensic-entomology case analysis"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Mortiscope
from .core.models.app import (
    AnalysisServiceConfig,
    AppConfig,
    ExecutorConfig,
    MailConfig,
)
from .core.models.broker import PostgresConfig
from .core.models.retry import RetryPolicy
from .core.models.events import (
    AnalysisRequested,
    RecalculationRequested,
    CaseExportRequested,
    ImageExportRequested,
    AccountDeletionConfirmed,
    AccountDeletionExecute,
    CasePayload,
    CaseExportPayload,
    ImageExportPayload,
    DeletionConfirmedPayload,
    DeletionExecutePayload,
    EventEnvelope,
    TriggerEvent,
    parse_trigger_event,
)
from .core.models.runs import FailureContext, RunInfo
from .core.engine import Executor, StepContext, WorkflowDefinition, workflow
from .core.worker import Worker
from .core.types.status import RunStatus, RecordStatus, RUN_TERMINAL_STATES
from .core.errors import (
    ErrorCode,
    MortiscopeError,
    ConfigurationError,
    EventValidationError,
    RegistryError,
    WorkflowDefinitionError,
    ValidationReport,
    MultipleValidationErrors,
)
from .core.types.result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'Mortiscope',
    'AppConfig',
    'PostgresConfig',
    'AnalysisServiceConfig',
    'MailConfig',
    'ExecutorConfig',
    'RetryPolicy',
    # Events
    'AnalysisRequested',
    'RecalculationRequested',
    'CaseExportRequested',
    'ImageExportRequested',
    'AccountDeletionConfirmed',
    'AccountDeletionExecute',
    'CasePayload',
    'CaseExportPayload',
    'ImageExportPayload',
    'DeletionConfirmedPayload',
    'DeletionExecutePayload',
    'EventEnvelope',
    'TriggerEvent',
    'parse_trigger_event',
    # Execution
    'Executor',
    'StepContext',
    'WorkflowDefinition',
    'workflow',
    'Worker',
    'FailureContext',
    'RunInfo',
    'RunStatus',
    'RecordStatus',
    'RUN_TERMINAL_STATES',
    # Errors
    'ErrorCode',
    'MortiscopeError',
    'ConfigurationError',
    'EventValidationError',
    'RegistryError',
    'WorkflowDefinitionError',
    'ValidationReport',
    'MultipleValidationErrors',
    # Result
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]

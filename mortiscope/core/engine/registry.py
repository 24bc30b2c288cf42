from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterator, Mapping

from mortiscope.core.errors import ErrorCode, RegistryError

if TYPE_CHECKING:
    from mortiscope.core.engine.definition import WorkflowDefinition


class NotRegistered(RegistryError, KeyError):
    """Raised when a workflow id is not present in the registry.

    Inherits from KeyError so Mapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, workflow_id: str) -> None:
        RegistryError.__init__(
            self,
            message=f"workflow '{workflow_id}' not registered",
            code=ErrorCode.WORKFLOW_NOT_REGISTERED,
            notes=[f"requested workflow: '{workflow_id}'"],
            help_text='register the workflow with executor.register() before starting workers',
        )
        self.workflow_id = workflow_id


class DuplicateWorkflowIdError(RegistryError):
    """Raised when a workflow id is registered more than once."""

    def __init__(self, workflow_id: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate workflow id '{workflow_id}'",
            code=ErrorCode.WORKFLOW_DUPLICATE_ID,
            notes=[context] if context else [],
            help_text='each workflow id must be unique within an executor',
        )
        self.workflow_id = workflow_id


class WorkflowRegistry(Mapping[str, 'WorkflowDefinition']):
    """Workflow id -> definition, plus an index from event name to definitions.

    Registering the same definition object twice is a no-op (re-import);
    a different definition under a taken id raises DuplicateWorkflowIdError.
    """

    def __init__(self) -> None:
        self._data: Dict[str, WorkflowDefinition] = {}
        self._by_event: Dict[str, list[WorkflowDefinition]] = {}

    def __getitem__(self, key: str) -> WorkflowDefinition:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        existing = self._data.get(definition.id)
        if existing is not None:
            if existing is definition:
                return existing
            raise DuplicateWorkflowIdError(
                definition.id,
                f"already registered for event '{existing.event_name}'",
            )
        self._data[definition.id] = definition
        self._by_event.setdefault(definition.event_name, []).append(definition)
        return definition

    def for_event(self, event_name: str) -> list[WorkflowDefinition]:
        """Definitions triggered by `event_name`, in registration order."""
        return list(self._by_event.get(event_name, ()))

    def ids(self) -> list[str]:
        return list(self._data.keys())

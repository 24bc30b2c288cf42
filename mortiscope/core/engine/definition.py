"""Workflow definitions: one trigger event, one async handler, an optional failure hook."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel

from mortiscope.core.errors import ErrorCode, workflow_definition_error
from mortiscope.core.models.retry import RetryPolicy
from mortiscope.core.models.runs import FailureContext

if TYPE_CHECKING:
    from mortiscope.core.engine.step import StepContext

EventT = TypeVar('EventT', bound=BaseModel)

Handler = Callable[[EventT, 'StepContext'], Awaitable[Any]]
FailureHook = Callable[[FailureContext], Awaitable[None]]


@dataclass(frozen=True)
class WorkflowDefinition(Generic[EventT]):
    """
    A durable workflow.

    - id: stable identifier; run ids and concurrency are scoped to it
    - name: human readable name for logs
    - trigger: event model class whose `name` triggers the workflow
    - handler: `async def handler(event, step)`; re-invoked from the top on
      every resume, with finished steps replayed from their memos
    - on_failure: called once with the original event after retries are used up
    - retry_policy: None takes the executor's default
    - concurrency_key: payload field; runs sharing its value never overlap
    """

    id: str
    name: str
    trigger: type[EventT]
    handler: Handler[EventT]
    on_failure: FailureHook | None = None
    retry_policy: RetryPolicy | None = None
    concurrency_key: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise workflow_definition_error(
                'workflow id must be a non-empty string',
                code=ErrorCode.WORKFLOW_NO_ID,
                fn=self.handler,
            )
        if not inspect.iscoroutinefunction(self.handler):
            raise workflow_definition_error(
                f"handler of workflow '{self.id}' must be an async function",
                code=ErrorCode.WORKFLOW_HANDLER_NOT_ASYNC,
                fn=self.handler,
                help_text='declare it as `async def handler(event, step): ...`',
            )
        if self.on_failure is not None and not inspect.iscoroutinefunction(
            self.on_failure
        ):
            raise workflow_definition_error(
                f"failure hook of workflow '{self.id}' must be an async function",
                code=ErrorCode.WORKFLOW_HOOK_NOT_ASYNC,
                fn=self.on_failure,
            )
        if self.concurrency_key is not None:
            payload_fields = self.payload_type.model_fields
            if self.concurrency_key not in payload_fields:
                raise workflow_definition_error(
                    f"concurrency key '{self.concurrency_key}' is not a field of "
                    f'{self.payload_type.__name__}',
                    code=ErrorCode.WORKFLOW_INVALID_CONCURRENCY_KEY,
                    fn=self.handler,
                    notes=[f"available fields: {', '.join(payload_fields)}"],
                )

    @property
    def event_name(self) -> str:
        return self.trigger.model_fields['name'].default

    @property
    def payload_type(self) -> type[BaseModel]:
        return self.trigger.model_fields['data'].annotation  # type: ignore[return-value]

    def concurrency_value(self, event: BaseModel) -> str | None:
        if self.concurrency_key is None:
            return None
        value = getattr(getattr(event, 'data'), self.concurrency_key, None)
        return None if value is None else str(value)


def workflow(
    id: str,
    *,
    trigger: type[EventT],
    name: str | None = None,
    on_failure: FailureHook | None = None,
    retry_policy: RetryPolicy | None = None,
    concurrency_key: str | None = None,
) -> Callable[[Handler[EventT]], WorkflowDefinition[EventT]]:
    """Decorator form of WorkflowDefinition.

    Example:
        @workflow('fastapi-analysis-event', trigger=AnalysisRequested)
        async def analyze(event: AnalysisRequested, step: StepContext) -> dict[str, Any]:
            ...
    """

    def decorator(fn: Handler[EventT]) -> WorkflowDefinition[EventT]:
        return WorkflowDefinition(
            id=id,
            name=name or getattr(fn, '__name__', id),
            trigger=trigger,
            handler=fn,
            on_failure=on_failure,
            retry_policy=retry_policy,
            concurrency_key=concurrency_key,
        )

    return decorator

"""Step context handed to workflow handlers.

A handler is re-invoked from the top every time its run is claimed. Each step
is keyed by (run_id, step_name): a step with a stored memo returns the memo
without running again, so the handler's side effects happen at most once per
successful step. Step names must be unique within one workflow.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from mortiscope.core.codec.serde import Json, snapshot
from mortiscope.core.errors import ErrorCode, WorkflowDefinitionError
from mortiscope.core.logging import get_logger
from mortiscope.core.models.runs import RunRecord, StepKind, StepRecord

if TYPE_CHECKING:
    from mortiscope.core.models.events import TriggerEvent
    from mortiscope.core.store.base import StepStore

SendEventFn = Callable[['TriggerEvent', 'datetime | None', str], Awaitable[list[str]]]

logger = get_logger('step')


class StepSuspended(BaseException):
    """Unwinds a handler that reached an unfinished sleep.

    Derives from BaseException so a handler's own `except Exception` blocks
    do not intercept it.
    """

    def __init__(self, step_name: str, wake_at: datetime) -> None:
        super().__init__(f"step '{step_name}' sleeping until {wake_at.isoformat()}")
        self.step_name = step_name
        self.wake_at = wake_at


class StepContext:
    """Durable step primitives for one invocation of one run."""

    def __init__(
        self,
        run: RunRecord,
        memos: dict[str, StepRecord],
        store: StepStore,
        *,
        clock: Callable[[], datetime],
        send_event: SendEventFn,
    ) -> None:
        self.run_id = run.id
        self.workflow_id = run.workflow_id
        self.attempt = run.attempt
        self._memos = memos
        self._store = store
        self._clock = clock
        self._send_event = send_event
        self._seen: set[str] = set()
        self.executed: list[str] = []
        """Steps executed (not replayed) during this invocation."""

    def _enter(self, name: str) -> StepRecord | None:
        if not name:
            raise WorkflowDefinitionError(
                message='step name must be a non-empty string',
                code=ErrorCode.WORKFLOW_DUPLICATE_STEP,
                notes=[f'workflow: {self.workflow_id}'],
            )
        if name in self._seen:
            raise WorkflowDefinitionError(
                message=f"step name '{name}' used twice in one run",
                code=ErrorCode.WORKFLOW_DUPLICATE_STEP,
                notes=[f'workflow: {self.workflow_id}', f'run: {self.run_id}'],
                help_text='step names key the memoized outcome; give every step a unique name',
            )
        self._seen.add(name)
        return self._memos.get(name)

    async def _memoize(self, record: StepRecord) -> StepRecord:
        stored = await self._store.save_step(record)
        self._memos[record.name] = stored
        self.executed.append(record.name)
        return stored

    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Json:
        """
        Run `fn` once for this run and return its result as JSON.

        Exceptions from `fn` propagate and nothing is memoized, so the step
        runs again on the next attempt. The return value is always the JSON
        form of the result, identical on first execution and on replay.
        """
        memo = self._enter(name)
        if memo is not None:
            logger.debug(f'[{self.run_id}] replaying step {name}')
            return memo.output

        logger.debug(f'[{self.run_id}] running step {name}')
        output = snapshot(await fn())
        stored = await self._memoize(
            StepRecord(run_id=self.run_id, name=name, kind=StepKind.RUN, output=output)
        )
        return stored.output

    async def sleep(self, name: str, duration: timedelta) -> None:
        """Suspend the run for `duration`; the next invocation continues after it."""
        memo = self._enter(name)
        if memo is None:
            wake_at = self._clock() + duration
            memo = await self._memoize(
                StepRecord(
                    run_id=self.run_id, name=name, kind=StepKind.SLEEP, wake_at=wake_at
                )
            )
        await self._wait_until(memo)

    async def sleep_until(self, name: str, when: datetime) -> None:
        """Suspend the run until the absolute time `when`."""
        memo = self._enter(name)
        if memo is None:
            memo = await self._memoize(
                StepRecord(
                    run_id=self.run_id, name=name, kind=StepKind.SLEEP, wake_at=when
                )
            )
        await self._wait_until(memo)

    async def _wait_until(self, memo: StepRecord) -> None:
        if memo.wake_at is not None and self._clock() < memo.wake_at:
            raise StepSuspended(memo.name, memo.wake_at)

    async def send_event(
        self, name: str, event: TriggerEvent, *, ts: datetime | None = None
    ) -> Json:
        """
        Emit `event` at most once for this run.

        The event id is derived from (run_id, step name), so if the process
        dies between emitting and memoizing, the replayed send creates no new
        runs. `ts` delays delivery until that time.
        """
        memo = self._enter(name)
        if memo is not None:
            return memo.output

        event_id = f'{self.run_id}:{name}'
        run_ids = await self._send_event(event, ts, event_id)
        stored = await self._memoize(
            StepRecord(
                run_id=self.run_id,
                name=name,
                kind=StepKind.SEND_EVENT,
                output={'event_id': event_id, 'run_ids': run_ids},
            )
        )
        return stored.output

"""Durable step executor: event delivery, run claiming, replay, retry and failure hooks."""

from __future__ import annotations

import asyncio
import contextlib
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from mortiscope.core.codec.serde import snapshot
from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.registry import NotRegistered, WorkflowRegistry
from mortiscope.core.engine.step import StepContext, StepSuspended
from mortiscope.core.errors import ErrorCode, EventValidationError, error_message
from mortiscope.core.logging import get_logger
from mortiscope.core.models.app import ExecutorConfig
from mortiscope.core.models.events import (
    EVENT_TYPES,
    EventEnvelope,
    TriggerEvent,
    parse_trigger_event,
)
from mortiscope.core.models.retry import RetryPolicy
from mortiscope.core.models.runs import FailureContext, NewRun, RunInfo, RunRecord
from mortiscope.core.store.base import StepStore
from mortiscope.core.types.result import Err, Ok
from mortiscope.core.types.status import RunStatus
from mortiscope.core.utils.loop_runner import LoopRunner

# Run ids are derived from (event id, workflow id): redelivering an event
# (or replaying a send_event step) never creates a second run.
RUN_ID_NAMESPACE = uuid.UUID('7d0f6c1e-3c52-4b8e-9a0e-5f1f3b8d2a41')

logger = get_logger('executor')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_run_id(event_id: str, workflow_id: str) -> str:
    return str(uuid.uuid5(RUN_ID_NAMESPACE, f'{event_id}:{workflow_id}'))


def _default_worker_id() -> str:
    return f'{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}'


class Executor:
    """
    Delivers events to registered workflows and drives their runs.

    Every workflow matching an event gets one run. A run is invoked by
    `tick()` once claimed; its handler executes until it returns, sleeps
    (run suspended until the wake time) or raises (run retried per its
    RetryPolicy, then failed and handed to the workflow's failure hook).
    """

    def __init__(
        self,
        store: StepStore,
        config: ExecutorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.config = config or ExecutorConfig()
        self.clock = clock
        self.worker_id = worker_id or _default_worker_id()
        self.registry = WorkflowRegistry()
        self._default_policy = RetryPolicy.exponential(
            self.config.retry_base_seconds,
            max_retries=self.config.default_retries,
        )
        self._loop_runner = LoopRunner()

    # ----------------- Registration -----------------

    def register(self, definition: WorkflowDefinition[Any]) -> WorkflowDefinition[Any]:
        registered = self.registry.register(definition)
        logger.debug(
            f"Registered workflow '{definition.id}' for event '{definition.event_name}'"
        )
        return registered

    def retry_policy_for(self, definition: WorkflowDefinition[Any]) -> RetryPolicy:
        return definition.retry_policy or self._default_policy

    # ----------------- Delivery -----------------

    async def send(
        self,
        event: TriggerEvent,
        *,
        ts: datetime | None = None,
        event_id: str | None = None,
    ) -> list[str]:
        """
        Deliver `event` to every workflow registered for its name.

        `ts` delays the runs until that time. Returns the run ids of all
        matched workflows; sending again with the same `event_id` returns the
        same ids without creating new runs.
        """
        definitions = self.registry.for_event(event.name)
        envelope = EventEnvelope(
            id=event_id or str(uuid.uuid4()),
            name=event.name,
            data=event.wire_data(),
            ts=ts,
        )
        if not definitions:
            logger.warning(
                f"No workflow registered for event '{event.name}'; event {envelope.id} dropped"
            )
            return []

        next_run_at = ts or self.clock()
        runs = [
            NewRun(
                id=derive_run_id(envelope.id, definition.id),
                workflow_id=definition.id,
                event=envelope,
                max_retries=self.retry_policy_for(definition).max_retries,
                next_run_at=next_run_at,
                concurrency_key=definition.concurrency_value(event),
            )
            for definition in definitions
        ]
        inserted = await self.store.create_runs(runs)
        logger.info(
            f"Event '{event.name}' ({envelope.id}) delivered to "
            f'{len(runs)} workflow(s), {len(inserted)} new run(s)'
        )
        return [run.id for run in runs]

    async def send_named(
        self,
        name: str,
        data: Mapping[str, Any],
        *,
        ts: datetime | None = None,
        event_id: str | None = None,
    ) -> list[str]:
        """Validate a loosely-typed event (e.g. from the CLI) and send it."""
        if name not in EVENT_TYPES:
            raise EventValidationError(
                message=f"unknown event '{name}'",
                code=ErrorCode.EVENT_UNKNOWN,
                notes=[f"known events: {', '.join(sorted(EVENT_TYPES))}"],
            )
        match parse_trigger_event(name, dict(data)):
            case Ok(ok_value=event):
                return await self.send(event, ts=ts, event_id=event_id)
            case Err(err_value=exc):
                raise EventValidationError(
                    message=f"invalid payload for event '{name}'",
                    code=ErrorCode.EVENT_INVALID_PAYLOAD,
                    notes=[str(err['loc']) + ': ' + err['msg'] for err in exc.errors()],
                )

    def send_sync(
        self,
        event: TriggerEvent,
        *,
        ts: datetime | None = None,
        event_id: str | None = None,
    ) -> list[str]:
        """Blocking send() for synchronous callers (runs on a background loop)."""
        return self._loop_runner.call(self.send, event, ts=ts, event_id=event_id)

    # ----------------- Execution -----------------

    async def tick(self) -> int:
        """Claim one batch of due runs and execute them concurrently.

        Returns the number of runs claimed.
        """
        now = self.clock()
        runs = await self.store.claim_runs(
            worker_id=self.worker_id,
            now=now,
            lease_until=now + timedelta(seconds=self.config.claim_lease_seconds),
            limit=self.config.batch_size,
        )
        if not runs:
            return 0

        results = await asyncio.gather(
            *(self.execute(run) for run in runs), return_exceptions=True
        )
        for run, result in zip(runs, results):
            if isinstance(result, BaseException):
                # Store failure while finalizing; the lease expires and the run resumes
                logger.error(
                    f'Run {run.id} ({run.workflow_id}) could not be finalized: {result}',
                    exc_info=result,
                )
        return len(runs)

    async def run_until_idle(self, max_ticks: int = 100) -> int:
        """Tick until no run is due. Returns the total number of invocations."""
        total = 0
        for _ in range(max_ticks):
            claimed = await self.tick()
            if claimed == 0:
                break
            total += claimed
        return total

    async def execute(self, run: RunRecord) -> RunStatus:
        """Invoke the handler of one claimed run and record the outcome."""
        try:
            definition = self.registry[run.workflow_id]
        except NotRegistered as exc:
            logger.error(f'Run {run.id}: {exc.message}')
            await self.store.fail_run(
                run.id,
                worker_id=self.worker_id,
                attempt=run.attempt,
                error=exc.message,
                now=self.clock(),
            )
            return RunStatus.FAILED

        heartbeat = asyncio.create_task(self._keep_lease(run.id))
        try:
            return await self._invoke(run, definition)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _invoke(
        self, run: RunRecord, definition: WorkflowDefinition[Any]
    ) -> RunStatus:
        match run.event.parse():
            case Ok(ok_value=event):
                pass
            case Err(err_value=exc):
                error = EventValidationError(
                    message=f"invalid payload for event '{run.event.name}'",
                    code=ErrorCode.EVENT_INVALID_PAYLOAD,
                    notes=[str(exc)],
                )
                return await self._handle_failure(run, definition, error)

        memos = await self.store.load_steps(run.id)
        step = StepContext(
            run,
            memos,
            self.store,
            clock=self.clock,
            send_event=self._send_from_step,
        )
        logger.info(
            f"Run {run.id} ({definition.id}) invoked, attempt {run.attempt + 1}, "
            f'{len(memos)} memoized step(s)'
        )

        try:
            output = snapshot(await definition.handler(event, step))
        except StepSuspended as suspended:
            await self.store.suspend_run(
                run.id, worker_id=self.worker_id, wake_at=suspended.wake_at
            )
            logger.info(
                f'Run {run.id} ({definition.id}) sleeping in '
                f"'{suspended.step_name}' until {suspended.wake_at.isoformat()}"
            )
            return RunStatus.SLEEPING
        except Exception as exc:
            return await self._handle_failure(run, definition, exc)

        await self.store.complete_run(
            run.id, worker_id=self.worker_id, output=output, now=self.clock()
        )
        logger.info(f'Run {run.id} ({definition.id}) completed')
        return RunStatus.COMPLETED

    async def _handle_failure(
        self,
        run: RunRecord,
        definition: WorkflowDefinition[Any],
        exc: BaseException,
    ) -> RunStatus:
        attempt = run.attempt + 1
        message = error_message(exc)

        if attempt <= run.max_retries:
            delay = self.retry_policy_for(definition).delay_for(attempt)
            await self.store.retry_run(
                run.id,
                worker_id=self.worker_id,
                attempt=attempt,
                next_run_at=self.clock() + delay,
                error=message,
            )
            logger.warning(
                f'Run {run.id} ({definition.id}) failed attempt {attempt}, '
                f'retrying in {delay.total_seconds():.1f}s: {message}'
            )
            return RunStatus.PENDING

        logger.error(
            f'Run {run.id} ({definition.id}) failed after {attempt} attempt(s): {message}',
            exc_info=exc,
        )
        # The hook runs before FAILED is recorded: a crash in between replays
        # the hook on the next claim instead of skipping it.
        await self._call_failure_hook(
            definition,
            FailureContext(
                run_id=run.id,
                workflow_id=definition.id,
                event=run.event,
                error=exc,
                attempts=attempt,
            ),
        )
        await self.store.fail_run(
            run.id,
            worker_id=self.worker_id,
            attempt=attempt,
            error=message,
            now=self.clock(),
        )
        return RunStatus.FAILED

    async def _call_failure_hook(
        self, definition: WorkflowDefinition[Any], ctx: FailureContext
    ) -> None:
        if definition.on_failure is None:
            return
        try:
            await definition.on_failure(ctx)
        except Exception as hook_exc:
            logger.error(
                f"Failure hook of workflow '{definition.id}' raised for run "
                f'{ctx.run_id}: {error_message(hook_exc)}',
                exc_info=hook_exc,
            )

    async def _send_from_step(
        self, event: TriggerEvent, ts: datetime | None, event_id: str
    ) -> list[str]:
        return await self.send(event, ts=ts, event_id=event_id)

    async def _keep_lease(self, run_id: str) -> None:
        interval = max(1.0, self.config.claim_lease_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await self.store.renew_lease(
                    run_id,
                    worker_id=self.worker_id,
                    lease_until=self.clock()
                    + timedelta(seconds=self.config.claim_lease_seconds),
                )
            except Exception as exc:
                logger.warning(f'Run {run_id}: lease renewal failed: {exc}')
                continue
            if not owned:
                return

    # ----------------- Inspection -----------------

    async def get_run(self, run_id: str) -> RunInfo | None:
        return await self.store.get_run(run_id)

    def close(self) -> None:
        """Stop the background loop used by send_sync()."""
        self._loop_runner.stop()

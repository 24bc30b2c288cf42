"""Unit tests for the durable step executor against the in-memory step store."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from mortiscope.core.engine.definition import WorkflowDefinition, workflow
from mortiscope.core.engine.executor import Executor, derive_run_id
from mortiscope.core.engine.step import StepContext
from mortiscope.core.errors import ErrorCode, EventValidationError
from mortiscope.core.models.app import ExecutorConfig
from mortiscope.core.models.events import (
    AccountDeletionExecute,
    AnalysisRequested,
    CasePayload,
    DeletionExecutePayload,
    EventEnvelope,
    RecalculationRequested,
)
from mortiscope.core.models.retry import RetryPolicy
from mortiscope.core.models.runs import FailureContext, NewRun, StepKind, StepRecord
from mortiscope.core.types.status import RunStatus

from tests.unit.fakes import T0, FakeClock, InMemoryStepStore, drain

pytestmark = pytest.mark.unit


def _analysis(case_id: str = 'case-1') -> AnalysisRequested:
    return AnalysisRequested(data=CasePayload(case_id=case_id))


def _recalculation(case_id: str = 'case-1') -> RecalculationRequested:
    return RecalculationRequested(data=CasePayload(case_id=case_id))


class TestDelivery:
    async def test_one_run_per_matching_workflow(self, executor: Executor) -> None:
        @workflow('first', trigger=AnalysisRequested)
        async def first(event: AnalysisRequested, step: StepContext) -> None:
            return None

        @workflow('second', trigger=AnalysisRequested)
        async def second(event: AnalysisRequested, step: StepContext) -> None:
            return None

        executor.register(first)
        executor.register(second)

        run_ids = await executor.send(_analysis(), event_id='evt-1')

        assert run_ids == [
            derive_run_id('evt-1', 'first'),
            derive_run_id('evt-1', 'second'),
        ]

    async def test_redelivery_with_same_event_id_creates_no_new_run(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> None:
            return None

        executor.register(wf)

        first = await executor.send(_analysis(), event_id='evt-1')
        second = await executor.send(_analysis(), event_id='evt-1')

        assert first == second
        assert len(store.runs) == 1

    async def test_unmatched_event_is_dropped(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        assert await executor.send(_analysis()) == []
        assert store.runs == {}

    async def test_ts_delays_the_run(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> str:
            return 'done'

        executor.register(wf)
        [run_id] = await executor.send(_analysis(), ts=T0 + timedelta(hours=1))

        assert await executor.run_until_idle() == 0
        clock.advance(timedelta(hours=1))
        assert await executor.run_until_idle() == 1
        assert store.runs[run_id].status is RunStatus.COMPLETED

    async def test_send_named_validates_payload(self, executor: Executor) -> None:
        with pytest.raises(EventValidationError) as unknown:
            await executor.send_named('nope/event', {})
        assert unknown.value.code == ErrorCode.EVENT_UNKNOWN

        with pytest.raises(EventValidationError) as invalid:
            await executor.send_named('analysis/request.sent', {'case': 'x'})
        assert invalid.value.code == ErrorCode.EVENT_INVALID_PAYLOAD

    async def test_send_named_accepts_camel_case_payload(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> str:
            return event.data.case_id

        executor.register(wf)
        [run_id] = await executor.send_named('analysis/request.sent', {'caseId': 'case-9'})
        await executor.run_until_idle()

        assert store.runs[run_id].event.data == {'caseId': 'case-9'}
        assert store.runs[run_id].output == 'case-9'


class TestStepMemoization:
    async def test_completed_steps_are_not_reexecuted_on_retry(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        calls = {'load': 0, 'flaky': 0}
        seen: list[Any] = []

        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> Any:
            async def load() -> dict[str, Any]:
                calls['load'] += 1
                return {'at': clock()}

            async def flaky() -> str:
                calls['flaky'] += 1
                if calls['flaky'] == 1:
                    raise RuntimeError('transient')
                return 'ok'

            loaded = await step.run('load', load)
            seen.append(loaded)
            await step.run('flaky', flaky)
            return loaded

        executor.register(wf)
        [run_id] = await executor.send(_analysis())
        await drain(executor, store, clock)

        run = store.runs[run_id]
        assert run.status is RunStatus.COMPLETED
        assert run.attempt == 1
        assert calls == {'load': 1, 'flaky': 2}
        # First execution and replay both see the stored JSON form
        assert seen == [{'at': T0.isoformat()}, {'at': T0.isoformat()}]
        assert run.output == {'at': T0.isoformat()}

    async def test_expired_lease_resumes_after_last_memoized_step(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        calls: list[str] = []

        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> list[str]:
            async def record(name: str) -> str:
                calls.append(name)
                return name

            await step.run('one', lambda: record('one'))
            await step.run('two', lambda: record('two'))
            return calls

        executor.register(wf)
        [run_id] = await executor.send(_analysis())

        # A worker claims the run, memoizes 'one', then dies
        await store.claim_runs(
            worker_id='dead-worker', now=clock(), lease_until=clock() + timedelta(seconds=5), limit=1
        )
        await store.save_step(
            StepRecord(run_id=run_id, name='one', kind=StepKind.RUN, output='one')
        )
        assert await executor.run_until_idle() == 0

        clock.advance(timedelta(seconds=6))
        assert await executor.run_until_idle() == 1

        assert calls == ['two']
        assert store.runs[run_id].status is RunStatus.COMPLETED

    async def test_duplicate_step_name_fails_the_run(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested, retry_policy=RetryPolicy.none())
        async def wf(event: AnalysisRequested, step: StepContext) -> None:
            await step.run('same', _noop)
            await step.run('same', _noop)

        executor.register(wf)
        [run_id] = await executor.send(_analysis())
        await executor.run_until_idle()

        run = store.runs[run_id]
        assert run.status is RunStatus.FAILED
        assert run.error is not None and "'same' used twice" in run.error


async def _noop() -> None:
    return None


class TestSleep:
    async def test_sleep_suspends_until_wake_time(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        after_sleep: list[int] = []

        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> str:
            await step.sleep('nap', timedelta(minutes=5))
            await step.run('after', lambda: _append(after_sleep))
            return 'awake'

        executor.register(wf)
        [run_id] = await executor.send(_analysis())

        await executor.run_until_idle()
        run = store.runs[run_id]
        assert run.status is RunStatus.SLEEPING
        assert run.next_run_at == T0 + timedelta(minutes=5)
        assert after_sleep == []

        clock.advance(timedelta(minutes=4))
        assert await executor.run_until_idle() == 0

        clock.advance(timedelta(minutes=1))
        await executor.run_until_idle()
        assert run.status is RunStatus.COMPLETED
        assert after_sleep == [1]
        info = await executor.get_run(run_id)
        assert info is not None
        assert info.completed_steps == ['nap', 'after']

    async def test_handler_except_exception_does_not_swallow_suspension(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> str:
            try:
                await step.sleep_until('until', T0 + timedelta(days=1))
            except Exception:
                return 'swallowed'
            return 'awake'

        executor.register(wf)
        [run_id] = await executor.send(_analysis())
        await executor.run_until_idle()

        assert store.runs[run_id].status is RunStatus.SLEEPING
        assert store.runs[run_id].next_run_at == T0 + timedelta(days=1)


async def _append(target: list[int]) -> int:
    target.append(1)
    return len(target)


class TestSendEventStep:
    async def test_replayed_send_creates_no_duplicate_run(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        attempts = {'count': 0}
        when = T0 + timedelta(hours=2)

        @workflow('target', trigger=AccountDeletionExecute)
        async def target(event: AccountDeletionExecute, step: StepContext) -> str:
            return event.data.user_id

        @workflow('source', trigger=AnalysisRequested)
        async def source(event: AnalysisRequested, step: StepContext) -> Any:
            sent = await step.send_event(
                'emit',
                AccountDeletionExecute(data=DeletionExecutePayload(user_id='u-1')),
                ts=when,
            )

            async def explode_once() -> None:
                attempts['count'] += 1
                if attempts['count'] == 1:
                    raise RuntimeError('crash after emit')

            await step.run('after-emit', explode_once)
            return sent

        executor.register(target)
        executor.register(source)
        [source_run] = await executor.send(_analysis())

        await executor.run_until_idle()
        [pending] = store.runs_of('target')
        assert pending.next_run_at == when
        assert pending.status is RunStatus.PENDING

        await drain(executor, store, clock)

        assert len(store.runs_of('target')) == 1
        assert store.runs_of('target')[0].output == 'u-1'
        output = store.runs[source_run].output
        assert output['event_id'] == f'{source_run}:emit'
        assert output['run_ids'] == [pending.id]


class TestFailure:
    async def test_retries_then_hook_then_failed(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        hook_calls: list[FailureContext] = []
        status_at_hook: list[RunStatus] = []

        async def on_failure(ctx: FailureContext) -> None:
            hook_calls.append(ctx)
            status_at_hook.append(store.runs[ctx.run_id].status)

        @workflow('wf', trigger=AnalysisRequested, on_failure=on_failure)
        async def wf(event: AnalysisRequested, step: StepContext) -> None:
            await step.run('always-fails', _fail)

        executor.register(wf)
        [run_id] = await executor.send(_analysis('case-7'), event_id='evt-7')
        await drain(executor, store, clock)

        run = store.runs[run_id]
        assert run.status is RunStatus.FAILED
        assert run.attempt == 3
        assert run.error == 'upstream down'
        assert len(hook_calls) == 1
        ctx = hook_calls[0]
        assert ctx.event.data == {'caseId': 'case-7'}
        assert ctx.event.id == 'evt-7'
        assert str(ctx.error) == 'upstream down'
        assert ctx.attempts == 3
        # Hook ran while the run was still claimed
        assert status_at_hook == [RunStatus.RUNNING]

    async def test_hook_exception_is_contained(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        async def broken_hook(ctx: FailureContext) -> None:
            raise RuntimeError('hook bug')

        @workflow(
            'wf',
            trigger=AnalysisRequested,
            on_failure=broken_hook,
            retry_policy=RetryPolicy.none(),
        )
        async def wf(event: AnalysisRequested, step: StepContext) -> None:
            await step.run('always-fails', _fail)

        executor.register(wf)
        [run_id] = await executor.send(_analysis())
        await executor.run_until_idle()

        assert store.runs[run_id].status is RunStatus.FAILED

    async def test_invalid_stored_payload_goes_through_failure_path(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        hook_calls: list[FailureContext] = []

        async def on_failure(ctx: FailureContext) -> None:
            hook_calls.append(ctx)

        @workflow(
            'wf',
            trigger=AnalysisRequested,
            on_failure=on_failure,
            retry_policy=RetryPolicy.none(),
        )
        async def wf(event: AnalysisRequested, step: StepContext) -> None:
            return None

        executor.register(wf)
        await store.create_runs([
            NewRun(
                id='bad-run',
                workflow_id='wf',
                event=EventEnvelope(id='e', name='analysis/request.sent', data={}),
                max_retries=0,
                next_run_at=clock(),
            )
        ])
        await executor.run_until_idle()

        assert store.runs['bad-run'].status is RunStatus.FAILED
        assert isinstance(hook_calls[0].error, EventValidationError)

    async def test_unregistered_workflow_fails_immediately(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        await store.create_runs([
            NewRun(
                id='orphan',
                workflow_id='ghost',
                event=EventEnvelope(id='e', name='analysis/request.sent', data={'caseId': 'c'}),
                max_retries=2,
                next_run_at=clock(),
            )
        ])
        await executor.run_until_idle()

        run = store.runs['orphan']
        assert run.status is RunStatus.FAILED
        assert run.error is not None and 'ghost' in run.error

    async def test_store_error_while_finalizing_does_not_break_tick(
        self,
        executor: Executor,
        store: InMemoryStepStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        @workflow('wf', trigger=AnalysisRequested)
        async def wf(event: AnalysisRequested, step: StepContext) -> str:
            return 'done'

        async def broken_complete(*args: Any, **kwargs: Any) -> bool:
            raise ConnectionError('db gone')

        executor.register(wf)
        [run_id] = await executor.send(_analysis())
        monkeypatch.setattr(store, 'complete_run', broken_complete)

        assert await executor.tick() == 1
        # Still RUNNING under its lease: another claim resumes it once it expires
        assert store.runs[run_id].status is RunStatus.RUNNING


async def _fail() -> None:
    raise RuntimeError('upstream down')


class TestConcurrencyKey:
    def _register(self, executor: Executor) -> None:
        @workflow('recalc', trigger=RecalculationRequested, concurrency_key='case_id')
        async def recalc(event: RecalculationRequested, step: StepContext) -> None:
            return None

        executor.register(recalc)

    async def test_same_key_runs_one_at_a_time(
        self, executor: Executor, store: InMemoryStepStore, clock: FakeClock
    ) -> None:
        self._register(executor)
        await executor.send(_recalculation('case-1'))
        await executor.send(_recalculation('case-1'))

        claimed = await store.claim_runs(
            worker_id='w', now=clock(), lease_until=clock() + timedelta(minutes=5), limit=10
        )
        assert len(claimed) == 1
        assert claimed[0].concurrency_key == 'case-1'

        again = await store.claim_runs(
            worker_id='w2', now=clock(), lease_until=clock() + timedelta(minutes=5), limit=10
        )
        assert again == []

    async def test_different_keys_run_in_parallel(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        self._register(executor)
        await executor.send(_recalculation('case-1'))
        await executor.send(_recalculation('case-2'))

        assert await executor.tick() == 2

    async def test_queued_run_proceeds_after_sibling_finishes(
        self, executor: Executor, store: InMemoryStepStore
    ) -> None:
        self._register(executor)
        await executor.send(_recalculation('case-1'))
        await executor.send(_recalculation('case-1'))

        assert await executor.tick() == 1
        assert await executor.tick() == 1
        assert all(row.status is RunStatus.COMPLETED for row in store.runs.values())


class TestRetryPolicyDefaults:
    async def test_definition_without_policy_uses_executor_default(
        self, executor: Executor
    ) -> None:
        defn = WorkflowDefinition(
            id='wf', name='wf', trigger=AnalysisRequested, handler=_handler
        )
        policy = executor.retry_policy_for(defn)
        assert policy.max_retries == 2
        assert policy.backoff_strategy == 'exponential'

    async def test_explicit_policy_wins(self, executor: Executor) -> None:
        defn = WorkflowDefinition(
            id='wf',
            name='wf',
            trigger=AnalysisRequested,
            handler=_handler,
            retry_policy=RetryPolicy.fixed([5, 5, 5, 5]),
        )
        assert executor.retry_policy_for(defn).max_retries == 4


async def _handler(event: AnalysisRequested, step: StepContext) -> None:
    return None


@pytest.mark.unit
def test_send_sync_from_plain_thread() -> None:
    store = InMemoryStepStore()
    executor = Executor(store, ExecutorConfig(), clock=FakeClock(), worker_id='w')

    @workflow('wf', trigger=AnalysisRequested)
    async def wf(event: AnalysisRequested, step: StepContext) -> None:
        return None

    executor.register(wf)
    try:
        run_ids = executor.send_sync(_analysis(), event_id='sync-1')
    finally:
        executor.close()

    assert run_ids == [derive_run_id('sync-1', 'wf')]
    assert set(store.runs) == set(run_ids)

"""In-memory doubles for the step store, datastore, mailer and clock.

They follow the PostgreSQL implementations' semantics closely (claim
eligibility, concurrency keys, fenced finalization, guarded status
transitions) so workflows can run end-to-end through the real Executor.
"""

from __future__ import annotations

import contextlib
import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from mortiscope.core.datastore.base import ensure_not_failed
from mortiscope.core.models.app import AnalysisServiceConfig
from mortiscope.core.models.events import EventEnvelope
from mortiscope.core.models.records import (
    AnalysisOutcome,
    AnalysisResultRecord,
    CaseRecord,
    DeletionTokenRecord,
    ExportRecord,
    ExportScope,
    UserRecord,
)
from mortiscope.core.models.runs import NewRun, RunInfo, RunRecord, StepRecord
from mortiscope.core.services.analysis import AnalysisServiceClient
from mortiscope.core.types.status import RecordStatus, RunStatus, allowed_sources

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


# ---------------------------------------------------------------------------
# Step store
# ---------------------------------------------------------------------------


@dataclass
class _RunRow:
    id: str
    workflow_id: str
    event: EventEnvelope
    status: RunStatus
    attempt: int
    max_retries: int
    next_run_at: datetime
    concurrency_key: str | None
    seq: int
    claimed_by: str | None = None
    lease_until: datetime | None = None
    output: Any = None
    error: str | None = None


class InMemoryStepStore:
    def __init__(self) -> None:
        self.runs: dict[str, _RunRow] = {}
        self.steps: dict[str, dict[str, StepRecord]] = {}
        self._seq = itertools.count()
        self.schema_initialized = False
        self.closed = False

    async def ensure_schema_initialized(self) -> None:
        self.schema_initialized = True

    async def close_async(self) -> None:
        self.closed = True

    async def create_runs(self, runs: Sequence[NewRun]) -> list[str]:
        inserted: list[str] = []
        for run in runs:
            if run.id in self.runs:
                continue
            self.runs[run.id] = _RunRow(
                id=run.id,
                workflow_id=run.workflow_id,
                event=run.event,
                status=RunStatus.PENDING,
                attempt=0,
                max_retries=run.max_retries,
                next_run_at=run.next_run_at,
                concurrency_key=run.concurrency_key,
                seq=next(self._seq),
            )
            inserted.append(run.id)
        return inserted

    def _is_due(self, row: _RunRow, now: datetime) -> bool:
        if row.status in (RunStatus.PENDING, RunStatus.SLEEPING):
            return row.next_run_at <= now
        if row.status is RunStatus.RUNNING:
            return row.lease_until is not None and row.lease_until < now
        return False

    def _key_held(self, row: _RunRow, now: datetime) -> bool:
        return any(
            other.id != row.id
            and other.workflow_id == row.workflow_id
            and other.concurrency_key == row.concurrency_key
            and other.status is RunStatus.RUNNING
            and other.lease_until is not None
            and other.lease_until >= now
            for other in self.runs.values()
        )

    async def claim_runs(
        self,
        *,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
        limit: int,
    ) -> list[RunRecord]:
        due = sorted(
            (row for row in self.runs.values() if self._is_due(row, now)),
            key=lambda row: (row.next_run_at, row.seq),
        )
        claimed: list[RunRecord] = []
        taken_keys: set[tuple[str, str]] = set()
        for row in due:
            if len(claimed) >= limit:
                break
            if row.concurrency_key is not None:
                key = (row.workflow_id, row.concurrency_key)
                if key in taken_keys or self._key_held(row, now):
                    continue
                taken_keys.add(key)
            row.status = RunStatus.RUNNING
            row.claimed_by = worker_id
            row.lease_until = lease_until
            claimed.append(
                RunRecord(
                    id=row.id,
                    workflow_id=row.workflow_id,
                    event=row.event,
                    status=RunStatus.RUNNING,
                    attempt=row.attempt,
                    max_retries=row.max_retries,
                    concurrency_key=row.concurrency_key,
                )
            )
        return claimed

    def _owned(self, run_id: str, worker_id: str) -> _RunRow | None:
        row = self.runs.get(run_id)
        if row is None or row.status is not RunStatus.RUNNING:
            return None
        return row if row.claimed_by == worker_id else None

    def _release(self, row: _RunRow, status: RunStatus) -> None:
        row.status = status
        row.claimed_by = None
        row.lease_until = None

    async def renew_lease(
        self, run_id: str, *, worker_id: str, lease_until: datetime
    ) -> bool:
        row = self._owned(run_id, worker_id)
        if row is None:
            return False
        row.lease_until = lease_until
        return True

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        return dict(self.steps.get(run_id, {}))

    async def save_step(self, step: StepRecord) -> StepRecord:
        return self.steps.setdefault(step.run_id, {}).setdefault(step.name, step)

    async def complete_run(
        self, run_id: str, *, worker_id: str, output: Any, now: datetime
    ) -> bool:
        row = self._owned(run_id, worker_id)
        if row is None:
            return False
        row.output = output
        row.error = None
        self._release(row, RunStatus.COMPLETED)
        return True

    async def suspend_run(
        self, run_id: str, *, worker_id: str, wake_at: datetime
    ) -> bool:
        row = self._owned(run_id, worker_id)
        if row is None:
            return False
        row.next_run_at = wake_at
        self._release(row, RunStatus.SLEEPING)
        return True

    async def retry_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        next_run_at: datetime,
        error: str,
    ) -> bool:
        row = self._owned(run_id, worker_id)
        if row is None:
            return False
        row.attempt = attempt
        row.next_run_at = next_run_at
        row.error = error
        self._release(row, RunStatus.PENDING)
        return True

    async def fail_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        error: str,
        now: datetime,
    ) -> bool:
        row = self._owned(run_id, worker_id)
        if row is None:
            return False
        row.attempt = attempt
        row.error = error
        self._release(row, RunStatus.FAILED)
        return True

    async def get_run(self, run_id: str) -> RunInfo | None:
        row = self.runs.get(run_id)
        if row is None:
            return None
        return RunInfo(
            run_id=row.id,
            workflow_id=row.workflow_id,
            event_name=row.event.name,
            status=row.status,
            attempt=row.attempt,
            max_retries=row.max_retries,
            next_run_at=row.next_run_at,
            output=row.output,
            error=row.error,
            completed_steps=list(self.steps.get(row.id, {})),
        )

    def runs_of(self, workflow_id: str) -> list[_RunRow]:
        return [row for row in self.runs.values() if row.workflow_id == workflow_id]


# ---------------------------------------------------------------------------
# Datastore
# ---------------------------------------------------------------------------


@dataclass
class _ExportRow:
    id: str
    scope: ExportScope
    format: str
    status: RecordStatus = RecordStatus.PENDING
    case_id: str | None = None
    upload_id: str | None = None
    failure_reason: str | None = None


class InMemoryTransaction:
    def __init__(self, users: dict[str, UserRecord]) -> None:
        self._users = users

    async def get_user_for_update(self, user_id: str) -> UserRecord | None:
        user = self._users.get(user_id)
        return replace(user) if user is not None else None

    async def delete_user(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None


class InMemoryDatastore:
    """Datastore double with the same guarded status transitions."""

    def __init__(self) -> None:
        self.results: dict[str, AnalysisResultRecord] = {}
        self.cases: dict[str, CaseRecord] = {}
        self.exports: dict[str, _ExportRow] = {}
        self.tokens: dict[str, DeletionTokenRecord] = {}
        self.users: dict[str, UserRecord] = {}
        self.status_writes: list[tuple[str, RecordStatus]] = []
        """(record id, status) for every applied status change."""

    # ---- seeding ----

    def add_case(
        self,
        case_id: str,
        *,
        status: RecordStatus = RecordStatus.PENDING,
        recalculation_needed: bool = False,
    ) -> AnalysisResultRecord:
        self.cases[case_id] = CaseRecord(id=case_id, recalculation_needed=recalculation_needed)
        self.results[case_id] = AnalysisResultRecord(case_id=case_id, status=status)
        return self.results[case_id]

    def add_export(
        self,
        export_id: str,
        *,
        case_id: str | None = None,
        upload_id: str | None = None,
        format: str = 'csv',
    ) -> _ExportRow:
        scope = ExportScope.CASE if case_id is not None else ExportScope.IMAGE
        self.exports[export_id] = _ExportRow(
            id=export_id, scope=scope, format=format, case_id=case_id, upload_id=upload_id
        )
        return self.exports[export_id]

    def add_user(
        self,
        user_id: str,
        email: str,
        *,
        name: str | None = None,
        deletion_scheduled_at: datetime | None = None,
    ) -> UserRecord:
        self.users[user_id] = UserRecord(
            id=user_id, email=email, name=name, deletion_scheduled_at=deletion_scheduled_at
        )
        return self.users[user_id]

    def add_token(self, token: str, email: str, expires: datetime) -> None:
        self.tokens[token] = DeletionTokenRecord(token=token, identifier=email, expires=expires)

    # ---- analysis results ----

    def _move_result(
        self, case_id: str, target: RecordStatus, *, recalculation: bool = False
    ) -> AnalysisResultRecord | None:
        record = self.results.get(case_id)
        if record is None or record.status not in allowed_sources(
            target, recalculation=recalculation
        ):
            return None
        record.status = target
        self.status_writes.append((case_id, target))
        return record

    async def set_analysis_status(
        self, case_id: str, status: RecordStatus, *, recalculation: bool = False
    ) -> bool:
        ensure_not_failed(status)
        return self._move_result(case_id, status, recalculation=recalculation) is not None

    async def save_analysis_result(self, case_id: str, outcome: AnalysisOutcome) -> bool:
        record = self._move_result(case_id, RecordStatus.COMPLETED)
        if record is None:
            return False
        record.total_counts = outcome.total_counts
        record.oldest_stage_detected = outcome.oldest_stage_detected
        record.explanation = outcome.explanation
        record.pmi_source_image_key = outcome.pmi_source_image_key
        record.pmi_days = outcome.pmi_days
        record.pmi_hours = outcome.pmi_hours
        record.pmi_minutes = outcome.pmi_minutes
        record.stage_used_for_calculation = outcome.stage_used_for_calculation
        record.temperature_provided = outcome.temperature_provided
        record.calculated_adh = outcome.calculated_adh
        record.ldt_used = outcome.ldt_used
        return True

    async def complete_analysis(
        self, case_id: str, *, explanation: str | None = None
    ) -> bool:
        record = self._move_result(case_id, RecordStatus.COMPLETED)
        if record is None:
            return False
        if explanation is not None:
            record.explanation = explanation
        return True

    async def mark_analysis_failed(self, case_id: str, explanation: str) -> bool:
        record = self._move_result(case_id, RecordStatus.FAILED)
        if record is None:
            return False
        record.explanation = explanation
        return True

    async def analysis_result_exists(self, case_id: str) -> bool:
        return case_id in self.results

    async def get_analysis_result(self, case_id: str) -> AnalysisResultRecord | None:
        return self.results.get(case_id)

    # ---- cases ----

    async def get_case(self, case_id: str) -> CaseRecord | None:
        return self.cases.get(case_id)

    async def clear_recalculation_flag(self, case_id: str) -> bool:
        case = self.cases.get(case_id)
        if case is None:
            return False
        case.recalculation_needed = False
        return True

    # ---- exports ----

    def _move_export(self, export_id: str, target: RecordStatus) -> _ExportRow | None:
        row = self.exports.get(export_id)
        if row is None or row.status not in allowed_sources(target):
            return None
        row.status = target
        self.status_writes.append((export_id, target))
        return row

    async def set_export_status(self, export_id: str, status: RecordStatus) -> bool:
        ensure_not_failed(status)
        return self._move_export(export_id, status) is not None

    async def mark_export_failed(self, export_id: str, reason: str) -> bool:
        row = self._move_export(export_id, RecordStatus.FAILED)
        if row is None:
            return False
        row.failure_reason = reason
        return True

    async def get_export(self, export_id: str) -> ExportRecord | None:
        row = self.exports.get(export_id)
        if row is None:
            return None
        return ExportRecord(
            id=row.id,
            scope=row.scope,
            format=row.format,
            status=row.status,
            case_id=row.case_id,
            upload_id=row.upload_id,
            failure_reason=row.failure_reason,
        )

    # ---- account deletion ----

    async def get_deletion_token(self, token: str) -> DeletionTokenRecord | None:
        return self.tokens.get(token)

    async def delete_deletion_token(self, token: str) -> bool:
        return self.tokens.pop(token, None) is not None

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        return next((u for u in self.users.values() if u.email == email), None)

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    async def schedule_user_deletion(self, user_id: str, when: datetime) -> bool:
        user = self.users.get(user_id)
        if user is None:
            return False
        user.deletion_scheduled_at = when
        return True

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        # Writes go to a copy that replaces the live table only on normal exit
        staged = dict(self.users)
        yield InMemoryTransaction(staged)
        self.users = staged


# ---------------------------------------------------------------------------
# Mailer and analysis service
# ---------------------------------------------------------------------------


@dataclass
class FakeMailer:
    sent: list[tuple[str, str]] = field(default_factory=lambda: [])
    fail: bool = False

    async def send_account_deletion_scheduled(self, email: str, grace_days: int) -> None:
        if self.fail:
            raise ConnectionError('smtp unavailable')
        self.sent.append(('deletion-scheduled', email))

    async def send_goodbye(self, email: str, name: str | None) -> None:
        if self.fail:
            raise ConnectionError('smtp unavailable')
        self.sent.append(('goodbye', email))


class RecordingService:
    """httpx.MockTransport handler routing by path, recording every request."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, path: str, response: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = response

    def json(self, path: str, body: Any, status_code: int = 200) -> None:
        self.routes[path] = lambda request: httpx.Response(status_code, json=body)

    def text(self, path: str, body: str, status_code: int) -> None:
        self.routes[path] = lambda request: httpx.Response(status_code, text=body)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text=f'no route for {request.url.path}')
        return handler(request)


async def _no_sleep(_: float) -> None:
    return None


def make_client(
    service: RecordingService,
    *,
    base_url: str | None = 'http://analysis.test',
    secret_key: str | None = 'secret',
    **config: Any,
) -> AnalysisServiceClient:
    return AnalysisServiceClient(
        AnalysisServiceConfig(base_url=base_url, secret_key=secret_key, **config),
        transport=httpx.MockTransport(service),
        sleep=_no_sleep,
    )


async def drain(
    executor: Any,
    store: InMemoryStepStore,
    clock: FakeClock,
    *,
    until: datetime | None = None,
    max_rounds: int = 50,
) -> None:
    """Run until no run is waiting, jumping the clock to each next wake/retry time.

    With `until`, runs due later than that are left waiting.
    """
    for _ in range(max_rounds):
        await executor.run_until_idle()
        waiting = [
            row.next_run_at
            for row in store.runs.values()
            if row.status in (RunStatus.PENDING, RunStatus.SLEEPING)
        ]
        if until is not None:
            waiting = [when for when in waiting if when <= until]
        if not waiting:
            return
        clock.now = max(clock.now, min(waiting))
    raise AssertionError('runs still waiting after max_rounds')

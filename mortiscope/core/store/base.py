"""Persistence contract of the durable step executor.

Result propagation policy
-------------------------
Store methods raise on infrastructure failures (connection loss, constraint
violations). The executor lets those propagate out of `tick()`; the worker loop
backs off on transient connection errors and keeps running. A run whose
finalization was lost that way keeps its RUNNING status until its lease expires
and is then resumed by another claim, replaying memoized steps.

Ownership
---------
Every mutation of a claimed run names the worker that claimed it. A worker
whose lease expired and was taken over gets False back and must drop the run.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from mortiscope.core.models.runs import NewRun, RunInfo, RunRecord, StepRecord


class StepStore(Protocol):
    async def ensure_schema_initialized(self) -> None: ...

    async def close_async(self) -> None: ...

    async def create_runs(self, runs: Sequence[NewRun]) -> list[str]:
        """Insert runs, skipping ids that already exist. Returns inserted ids."""
        ...

    async def claim_runs(
        self,
        *,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
        limit: int,
    ) -> list[RunRecord]:
        """Claim due runs: PENDING/SLEEPING past next_run_at, or RUNNING with an
        expired lease. A run with a concurrency key is skipped while another run
        of the same workflow and key holds a live lease."""
        ...

    async def renew_lease(
        self, run_id: str, *, worker_id: str, lease_until: datetime
    ) -> bool: ...

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]: ...

    async def save_step(self, step: StepRecord) -> StepRecord:
        """Insert a step memo unless one exists; returns the stored memo."""
        ...

    async def complete_run(
        self, run_id: str, *, worker_id: str, output: Any, now: datetime
    ) -> bool: ...

    async def suspend_run(
        self, run_id: str, *, worker_id: str, wake_at: datetime
    ) -> bool: ...

    async def retry_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        next_run_at: datetime,
        error: str,
    ) -> bool: ...

    async def fail_run(
        self,
        run_id: str,
        *,
        worker_id: str,
        attempt: int,
        error: str,
        now: datetime,
    ) -> bool: ...

    async def get_run(self, run_id: str) -> RunInfo | None: ...

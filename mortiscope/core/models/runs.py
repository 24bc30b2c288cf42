# mortiscope/core/models/runs.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from mortiscope.core.models.events import EventEnvelope
from mortiscope.core.types.status import RunStatus


class StepKind(str, Enum):
    RUN = 'run'
    SLEEP = 'sleep'
    SEND_EVENT = 'send_event'


@dataclass
class NewRun:
    """A run to insert when an event is delivered to a workflow."""

    id: str
    workflow_id: str
    event: EventEnvelope
    max_retries: int
    next_run_at: datetime
    concurrency_key: str | None = None


@dataclass
class RunRecord:
    """A claimed run, as handed to the executor."""

    id: str
    workflow_id: str
    event: EventEnvelope
    status: RunStatus
    attempt: int
    max_retries: int
    concurrency_key: str | None = None


@dataclass(frozen=True)
class StepRecord:
    """Persisted outcome of one step; keyed by (run_id, name)."""

    run_id: str
    name: str
    kind: StepKind
    output: Any = None
    wake_at: datetime | None = None


@dataclass
class RunInfo:
    """Read-only view of a run for inspection and tests."""

    run_id: str
    workflow_id: str
    event_name: str
    status: RunStatus
    attempt: int
    max_retries: int
    next_run_at: datetime | None
    output: Any = None
    error: str | None = None
    completed_steps: list[str] = field(default_factory=lambda: [])


@dataclass(frozen=True)
class FailureContext:
    """What a failure hook receives once a run has exhausted its retries."""

    run_id: str
    workflow_id: str
    event: EventEnvelope
    error: BaseException
    attempts: int
